#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import errno
import logging
import threading
import time

from . import constants
from .exceptions import (
    PeerError,
    ProtocolViolation,
    TftpError,
    TransferCancelled,
    TransferTimeout,
)
from .packet import Ack, Data, Error


class SessionStats:
    """
    SessionStats represents a digest of what happened during one transfer.

    The engine fills it in while the transfer runs. Servers hand it to their
    session stats callback once the transfer is over, clients return it from
    `Client.download` and `Client.upload`.
    """

    def __init__(self, server_addr, peer, file_path, direction=None):
        self.peer = peer
        self.server_addr = server_addr
        self.file_path = file_path
        self.direction = direction
        self.error = {}
        self.start_time = time.time()
        self.packets_sent = 0
        self.packets_acked = 0
        self.blocks_sent = 0
        self.blocks_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.retransmits = 0
        self.blksize = constants.DEFAULT_BLKSIZE

    def duration(self):
        return time.time() - self.start_time

    def __repr__(self):
        return (
            "<SessionStats peer=%r file=%r direction=%s sent=%d received=%d "
            "retransmits=%d error=%r>"
            % (
                self.peer,
                self.file_path,
                self.direction,
                self.bytes_sent,
                self.bytes_received,
                self.retransmits,
                self.error,
            )
        )


def next_block_number(block_number):
    block_number += 1
    if block_number > constants.MAX_BLOCK_NUMBER:
        block_number = 0  # Wrap around the block counter.
    return block_number


class TransferEngine:
    def __init__(
        self,
        channel,
        retries,
        timeout,
        block_size=constants.DEFAULT_BLKSIZE,
        stats=None,
        stop_event=None,
        bound_duplicates=True,
    ):
        """
        Drives one direction of one transfer with stop-and-wait
        acknowledgments. The same engine serves both ends of the wire: the
        server sends files with it on read requests and receives them on
        write requests, the client does the opposite.

        Args:
            channel: a `DatagramChannel` or `StreamChannel` connected to the
                peer.

            retries (int): how many times a packet is retransmitted, or a
                lost packet is waited for again, before giving up.

            timeout (float): seconds to wait for the peer's next packet.

            block_size (int): payload size of a full DATA packet.

            stats (SessionStats): where to account for the transfer. A fresh
                one is created if not given.

            stop_event (threading.Event): checked between protocol steps,
                when set the transfer is abandoned.

            bound_duplicates (bool): whether out of sequence DATA packets
                count against `retries` while receiving.
        """
        self._channel = channel
        self._retries = int(retries)
        self._timeout = timeout
        self._block_size = block_size
        self._stats = stats or SessionStats(None, channel.peer, None)
        self._stats.blksize = block_size
        self._stop_event = stop_event or threading.Event()
        self._bound_duplicates = bound_duplicates
        self._expire_ts = None
        self._reset_timeout()

    @property
    def stats(self):
        return self._stats

    def _reset_timeout(self):
        self._expire_ts = time.monotonic() + self._timeout

    def _remaining(self):
        return max(0, self._expire_ts - time.monotonic())

    def _check_stop(self):
        if self._stop_event.is_set():
            raise TransferCancelled(
                "Transfer with %r stopped" % (self._channel.peer,)
            )

    def _transmit(self, packet):
        self._channel.send(packet)
        self._stats.packets_sent += 1

    def _receive(self):
        self._check_stop()
        packet = self._channel.receive(self._remaining())
        if packet is not None and packet.opcode == constants.OPCODE_ERROR:
            logging.error(
                "Error reported from %r: %s (code %d)"
                % (self._channel.peer, packet.message, packet.error_code)
            )
            raise PeerError(packet.error_code, packet.message)
        return packet

    def _abort(self, error):
        self._stats.error = error.as_dict()
        if not error.notify_peer:
            return
        try:
            self._channel.send(Error.from_exception(error))
        except OSError as e:
            logging.warning(
                "Could not report error to %r: %s" % (self._channel.peer, e)
            )

    def _next_block(self, source):
        """
        Reads the next block from `source`, topping up short reads until the
        block is full or the source is exhausted.
        """
        try:
            last_size = -1  # block size before read. Used to check EOF.
            block = source.read(self._block_size) or b""
            while len(block) != self._block_size and len(block) != last_size:
                last_size = len(block)
                block += source.read(self._block_size - last_size) or b""
        except OSError as e:
            logging.exception("Error while reading from source: %s" % e)
            raise TftpError("Error while reading from source") from e
        return block

    def _write(self, sink, payload):
        try:
            sink.write(payload)
        except OSError as e:
            logging.exception("Error while writing to destination: %s" % e)
            code = constants.ERR_ACCESS_VIOLATION
            if e.errno == errno.ENOSPC:
                code = constants.ERR_DISK_FULL
            raise TftpError("Error while writing to destination", code) from e

    def _exchange(self, packet, block_number):
        """
        Sends `packet` and waits for the ACK of `block_number`,
        retransmitting `packet` on every timeout.
        """
        retransmits = 0
        self._transmit(packet)
        self._reset_timeout()
        while True:
            reply = self._receive()
            if reply is None:
                if retransmits >= self._retries:
                    raise TransferTimeout(
                        "timeout after %d retransmits waiting for ACK %d"
                        % (retransmits, block_number)
                    )
                retransmits += 1
                if not self._channel.reliable:
                    logging.info(
                        "Timeout waiting for ACK %d from %r, retransmitting (%d/%d)"
                        % (block_number, self._channel.peer, retransmits, self._retries)
                    )
                    self._stats.retransmits += 1
                    self._transmit(packet)
                self._reset_timeout()
                continue
            if reply.opcode != constants.OPCODE_ACK:
                raise ProtocolViolation(
                    "Expected an ACK from %r, got opcode %d"
                    % (self._channel.peer, reply.opcode)
                )
            if reply.block_number != block_number:
                # Unexpected ACK, let's ignore this.
                logging.warning(
                    "Ignoring ACK %d from %r, waiting for ACK %d"
                    % (reply.block_number, self._channel.peer, block_number)
                )
                continue
            self._stats.packets_acked += 1
            return

    def send(self, source, request=None):
        """
        Sends the content of `source` as a sequence of DATA packets.

        Args:
            source: object with a `read(n)` method returning bytes.

            request (Request): a write request to send first; the transfer
                then starts once the peer acknowledged it with ACK 0.

        Returns:
            SessionStats: the transfer digest.

        Raises:
            TftpError: the transfer failed; the peer has been told when the
                failure originated on this side.
        """
        try:
            if request is not None:
                self._exchange(request, 0)
            block_number = 0
            while True:
                self._check_stop()
                block_number = next_block_number(block_number)
                block = self._next_block(source)
                self._stats.blocks_sent += 1
                self._stats.bytes_sent += len(block)
                self._exchange(Data(block_number, block), block_number)
                if len(block) < self._block_size:
                    break
        except TftpError as e:
            self._abort(e)
            raise
        logging.info(
            "Sent %d bytes in %d blocks to %r"
            % (self._stats.bytes_sent, self._stats.blocks_sent, self._channel.peer)
        )
        return self._stats

    def receive(self, sink, first_packet):
        """
        Receives DATA packets and writes their payload to `sink`.

        Args:
            sink: object with a `write(data)` method.

            first_packet: what opens the exchange, a read request on the
                client or ACK 0 on the server. It is resent on timeouts until
                the first block arrives.

        Returns:
            SessionStats: the transfer digest.

        Raises:
            TftpError: the transfer failed; the peer has been told when the
                failure originated on this side.
        """
        try:
            self._receive_blocks(sink, first_packet)
        except TftpError as e:
            self._abort(e)
            raise
        logging.info(
            "Received %d bytes in %d blocks from %r"
            % (
                self._stats.bytes_received,
                self._stats.blocks_received,
                self._channel.peer,
            )
        )
        return self._stats

    def _receive_blocks(self, sink, first_packet):
        # the opening packet is resent on timeouts, out of sequence blocks
        # are answered with the acknowledgment of the previous block
        last_ack = first_packet
        previous_ack = Ack(0)
        expected = 1
        retries = 0
        self._transmit(last_ack)
        self._reset_timeout()
        while True:
            packet = self._receive()
            if packet is None:
                if retries >= self._retries:
                    raise TransferTimeout(
                        "timeout after %d retries waiting for block %d"
                        % (retries, expected)
                    )
                retries += 1
                if not self._channel.reliable:
                    logging.info(
                        "Timeout waiting for block %d from %r, resending %r (%d/%d)"
                        % (expected, self._channel.peer, last_ack, retries, self._retries)
                    )
                    self._stats.retransmits += 1
                    self._transmit(last_ack)
                self._reset_timeout()
                continue
            if packet.opcode != constants.OPCODE_DATA:
                raise ProtocolViolation(
                    "Expected DATA from %r, got opcode %d"
                    % (self._channel.peer, packet.opcode)
                )
            if packet.block_number != expected:
                logging.warning(
                    "Got block %d from %r, expected %d, resending %r"
                    % (packet.block_number, self._channel.peer, expected, previous_ack)
                )
                if self._bound_duplicates:
                    if retries >= self._retries:
                        raise ProtocolViolation(
                            "Too many out of sequence blocks, expected %d" % expected
                        )
                    retries += 1
                self._transmit(previous_ack)
                continue
            if len(packet.payload) > self._block_size:
                raise ProtocolViolation(
                    "Block %d carries %d bytes, more than %d"
                    % (expected, len(packet.payload), self._block_size)
                )
            self._write(sink, packet.payload)
            self._stats.blocks_received += 1
            self._stats.bytes_received += len(packet.payload)
            last_ack = previous_ack = Ack(expected)
            self._transmit(last_ack)
            if len(packet.payload) < self._block_size:
                return
            expected = next_block_number(expected)
            retries = 0
            self._reset_timeout()
