#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Channels are what a transfer talks through: one peer, one endpoint.

Both flavours expose the same small interface used by `TransferEngine`:
`send(packet)`, `receive(timeout)` which returns a packet or None on timeout,
`interrupt()` which may be called from any thread to make a pending (or the
next) `receive` raise `TransferCancelled`, and `close()`.
"""

import logging
import select
import socket
import time

from . import constants
from . import packet as tftp_packet
from .exceptions import ConnectionClosed, TransferCancelled, UnknownPeer


class BaseChannel:
    # On a reliable channel a timeout never triggers a retransmission.
    reliable = False

    def __init__(self, sock, peer):
        self._sock = sock
        self._peer = peer
        self._waker_r, self._waker_w = socket.socketpair()
        self._interrupted = False
        self._closed = False

    @property
    def peer(self):
        return self._peer

    @property
    def local_address(self):
        return self._sock.getsockname()

    def fileno(self):
        return self._sock.fileno()

    def _wait_readable(self, deadline):
        """
        Waits until the endpoint is readable or `deadline` passes.

        Returns:
            bool: True if the endpoint has data, False on timeout.

        Raises:
            TransferCancelled: `interrupt` was called.
        """
        if self._interrupted:
            raise TransferCancelled("Transfer with %r interrupted" % (self._peer,))
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        readable, _, _ = select.select([self._sock, self._waker_r], [], [], remaining)
        if self._waker_r in readable or self._interrupted:
            raise TransferCancelled("Transfer with %r interrupted" % (self._peer,))
        return bool(readable)

    def interrupt(self):
        if self._interrupted:
            return
        self._interrupted = True
        try:
            self._waker_w.send(b"\x00")
        except OSError as e:
            logging.debug("Could not wake channel for %r: %s" % (self._peer, e))

    def close(self):
        if self._closed:
            return
        self._closed = True
        logging.debug("Closing channel with %r" % (self._peer,))
        self._sock.close()
        self._waker_r.close()
        self._waker_w.close()


class DatagramChannel(BaseChannel):
    """
    A UDP endpoint bound to a single transfer.

    Args:
        sock (socket.socket): a bound UDP socket, owned by the channel from
            now on.

        peer (tuple): the remote (address, port).

        lock_peer (bool): when True, `peer` already is the remote transfer
            ID. A client passes False because its request goes to the
            server's well-known port and the server answers from a new one:
            the first packet coming from the peer's host fixes the TID.
    """

    def __init__(self, sock, peer, lock_peer=True):
        super().__init__(sock, peer)
        self._locked = lock_peer

    @property
    def locked(self):
        return self._locked

    def send(self, packet):
        self._sock.sendto(tftp_packet.encode(packet), self._peer)

    def _check_peer(self, sender):
        if not self._locked and sender[0] == self._peer[0]:
            logging.debug("Transfer ID for %r is now %r" % (self._peer, sender))
            self._peer = sender
            self._locked = True
            return
        if sender[:2] != self._peer[:2]:
            raise UnknownPeer(sender, self._peer)

    def _reject(self, error):
        logging.warning(str(error))
        reply = tftp_packet.Error.from_exception(error)
        try:
            self._sock.sendto(tftp_packet.encode(reply), error.peer)
        except OSError as e:
            logging.warning("Could not notify %r: %s" % (error.peer, e))

    def receive(self, timeout):
        """
        Returns the next packet from the peer, or None after `timeout`
        seconds. Datagrams from any other endpoint are answered with an
        "unknown transfer ID" error and otherwise ignored.

        Raises:
            MalformedPacket: the peer sent something we cannot decode.
            TransferCancelled: the channel was interrupted.
        """
        deadline = time.monotonic() + timeout
        while self._wait_readable(deadline):
            data, sender = self._sock.recvfrom(constants.MAX_PACKET_SIZE)
            try:
                self._check_peer(sender)
            except UnknownPeer as e:
                self._reject(e)
                continue
            return tftp_packet.decode(data)
        return None


class StreamChannel(BaseChannel):
    """A TCP connection carrying the stream framing."""

    reliable = True

    def __init__(self, sock, peer):
        super().__init__(sock, peer)
        self._decoder = tftp_packet.StreamDecoder()

    def send(self, packet):
        self._sock.sendall(tftp_packet.encode_stream(packet))

    def receive(self, timeout):
        """
        Returns the next complete packet, or None after `timeout` seconds.

        Raises:
            ConnectionClosed: the peer closed the connection.
            MalformedPacket: the byte stream does not hold a valid packet.
            TransferCancelled: the channel was interrupted.
        """
        deadline = time.monotonic() + timeout
        while True:
            packet = self._decoder.next_packet()
            if packet is not None:
                return packet
            if not self._wait_readable(deadline):
                return None
            data = self._sock.recv(constants.MAX_PACKET_SIZE)
            if not data:
                if self._decoder.buffered():
                    raise ConnectionClosed(
                        "Connection with %r closed mid-packet" % (self._peer,)
                    )
                raise ConnectionClosed("Connection with %r closed" % (self._peer,))
            self._decoder.feed(data)

    def close(self):
        if not self._closed:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logging.debug("Shutdown of %r failed: %s" % (self._peer, e))
        super().close()
