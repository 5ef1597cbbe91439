#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import logging
import os
import socket
import tempfile
import threading

from . import constants
from . import files
from . import packet as tftp_packet
from .engine import SessionStats, TransferEngine
from .exceptions import TftpError
from .transport import DatagramChannel, StreamChannel


class Client:
    def __init__(
        self,
        host,
        port=constants.DEFAULT_PORT,
        retries=constants.DEFAULT_RETRIES,
        timeout=constants.DEFAULT_TIMEOUT,
        transport=constants.TRANSPORT_UDP,
        block_size=constants.DEFAULT_BLKSIZE,
    ):
        """
        Talks to one TFTP server. Every call to `download` or `upload` is one
        transaction with its own endpoint; there is no retry of a whole
        transfer, only of single packets.

        Args:
            host (str): server name or address.

            port (int): server's well-known port.

            retries (int): per-packet retries.

            timeout (float): seconds to wait for each packet from the server.

            transport (str): "udp" for plain TFTP, "tcp" for the stream
                framing.

            block_size (int): DATA payload size, must match the server's.
        """
        if transport not in constants.TRANSPORTS:
            raise ValueError("Unknown transport: %r" % transport)
        self._host = host
        self._port = port
        self._retries = retries
        self._timeout = timeout
        self._transport = transport
        self._block_size = block_size
        self._stop_event = threading.Event()
        self._channel = None

    def _open_channel(self):
        if self._transport == constants.TRANSPORT_TCP:
            conn = socket.create_connection((self._host, self._port), self._timeout)
            conn.settimeout(None)
            return StreamChannel(conn, conn.getpeername())
        family, _, _, _, sockaddr = socket.getaddrinfo(
            self._host, self._port, 0, socket.SOCK_DGRAM
        )[0]
        sock = socket.socket(family, socket.SOCK_DGRAM)
        # the server answers from a new port, which becomes its transfer ID
        return DatagramChannel(sock, sockaddr, lock_peer=False)

    def _engine(self, channel, stats):
        return TransferEngine(
            channel,
            self._retries,
            self._timeout,
            block_size=self._block_size,
            stats=stats,
            stop_event=self._stop_event,
            bound_duplicates=False,
        )

    def cancel(self):
        """Abandons the running transfer, if any, from another thread."""
        self._stop_event.set()
        channel = self._channel
        if channel is not None:
            channel.interrupt()

    def download(self, remote_name, local_path):
        """
        Fetches `remote_name` from the server into `local_path`. The data is
        written to a temporary file next to `local_path`, which replaces it
        only once the transfer completed: a failed download leaves whatever
        was at `local_path` untouched.

        Returns:
            SessionStats: the transfer digest.

        Raises:
            TftpError: the transfer failed.
        """
        if not files.is_writable(local_path):
            raise TftpError(
                "Cannot write to local file %r" % local_path,
                constants.ERR_ACCESS_VIOLATION,
            )
        request = tftp_packet.read_request(remote_name)
        logging.info(
            "Downloading %r from %s:%d to %r"
            % (remote_name, self._host, self._port, local_path)
        )
        stats = None
        completed = False
        sink = tempfile.NamedTemporaryFile(
            dir=os.path.dirname(os.path.abspath(local_path)),
            prefix=".%s." % os.path.basename(local_path),
            delete=False,
        )
        try:
            with sink:
                stats = self._run(
                    local_path,
                    "read",
                    lambda engine: engine.receive(sink, request),
                )
            os.replace(sink.name, local_path)
            completed = True
        finally:
            if not completed:
                logging.info("Removing partially written file %r" % sink.name)
                os.unlink(sink.name)
        return stats

    def upload(self, local_path, remote_name):
        """
        Sends `local_path` to the server, stored there as `remote_name`.

        Returns:
            SessionStats: the transfer digest.

        Raises:
            TftpError: the transfer failed.
        """
        if not files.is_readable(local_path):
            raise TftpError(
                "Cannot read local file %r" % local_path,
                constants.ERR_FILE_NOT_FOUND,
            )
        request = tftp_packet.write_request(remote_name)
        logging.info(
            "Uploading %r to %s:%d as %r"
            % (local_path, self._host, self._port, remote_name)
        )
        source = files.FileResponseData(local_path)
        try:
            return self._run(
                local_path,
                "write",
                lambda engine: engine.send(source, request=request),
            )
        finally:
            source.close()

    def _run(self, local_path, direction, transfer):
        self._stop_event.clear()
        channel = self._open_channel()
        self._channel = channel
        stats = SessionStats(
            (self._host, self._port), channel.peer, local_path, direction
        )
        try:
            transfer(self._engine(channel, stats))
        finally:
            self._channel = None
            stats.peer = channel.peer
            channel.close()
        return stats
