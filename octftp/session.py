#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import errno
import logging
import os
import threading

from . import constants
from . import files
from .engine import SessionStats, TransferEngine
from .exceptions import MalformedPacket, PeerError, RequestRejected, TftpError
from .packet import Ack, Error


def validate_request(request):
    """
    Checks what can be checked without touching the filesystem.

    Raises:
        RequestRejected: the transfer mode is not supported.
    """
    if request.mode.lower() != constants.MODE_BINARY:
        raise RequestRejected(
            "Unknown mode: %r" % request.mode, constants.ERR_ILLEGAL_OPERATION
        )


class BaseSession:
    def __init__(
        self,
        channel,
        root,
        retries,
        timeout,
        block_size=constants.DEFAULT_BLKSIZE,
        stats_callback=None,
    ):
        """
        Serves transfers for a single peer on behalf of the server. A session
        owns its channel and runs in a worker thread of the server's pool.

        Note:
            Do not use this class as is, `DatagramSession` and
            `StreamSession` implement `_serve`.

        Args:
            channel: the channel connected to the peer, closed when the
                session ends.

            root (str): directory requested file names are resolved in.

            retries (int): per-packet retries, passed to `TransferEngine`.

            timeout (float): per-packet timeout, passed to `TransferEngine`.

            block_size (int): DATA payload size.

            stats_callback (callable): called with a `SessionStats` at the end
                of every transfer, successful or not.
        """
        self._channel = channel
        self._root = root
        self._retries = retries
        self._timeout = timeout
        self._block_size = block_size
        self._stats_callback = stats_callback
        self._stop_event = threading.Event()

    @property
    def peer(self):
        return self._channel.peer

    def stop(self):
        """
        Abandons the session. Safe to call from any thread: the pending
        receive of the transfer returns immediately.
        """
        self._stop_event.set()
        self._channel.interrupt()

    def close(self):
        """Releases the channel of a session that never ran."""
        self._channel.close()

    def run(self):
        try:
            self._serve()
        except Exception as e:
            logging.exception("Session with %r failed: %s" % (self.peer, e))
        finally:
            logging.debug("Closing session with %r" % (self.peer,))
            self._channel.close()

    def _serve(self):
        raise NotImplementedError()

    def _on_close(self, stats):
        if self._stats_callback is None:
            return
        try:
            self._stats_callback(stats)
        except Exception as e:
            logging.exception("Exception raised when calling stats callback: %s" % e)

    def handle_request(self, request):
        """
        Runs one read or write transfer to completion.

        Returns:
            SessionStats: the digest of the transfer. Its `error` attribute is
            empty when everything went fine.

        Raises:
            TftpError: only for failures that leave the channel unusable;
                rejected requests and errors reported by the peer are
                recorded in the returned stats instead.
        """
        direction = "read" if request.is_read else "write"
        stats = SessionStats(
            self._channel.local_address, self.peer, request.filename, direction
        )
        stats.blksize = self._block_size
        logging.info(
            "New %s request from peer `%s` for path `%s`"
            % (direction, self.peer, request.filename)
        )
        try:
            validate_request(request)
            path = files.resolve_path(self._root, request.filename)
            stats.file_path = path
            if request.is_read:
                self._handle_read(path, stats)
            else:
                self._handle_write(path, stats)
        except RequestRejected as e:
            stats.error = e.as_dict()
            logging.warning("Rejecting request from %r: %s" % (self.peer, e))
            self._channel.send(Error.from_exception(e))
        except PeerError as e:
            stats.error = e.as_dict()
        except TftpError as e:
            stats.error = e.as_dict()
            logging.error(
                "%s transfer of %r failed: %s" % (direction, stats.file_path, e)
            )
            raise
        finally:
            self._on_close(stats)
        return stats

    def _engine(self, stats):
        return TransferEngine(
            self._channel,
            self._retries,
            self._timeout,
            block_size=self._block_size,
            stats=stats,
            stop_event=self._stop_event,
            bound_duplicates=True,
        )

    def _handle_read(self, path, stats):
        if not os.path.exists(path):
            raise RequestRejected(error_code=constants.ERR_FILE_NOT_FOUND)
        if not files.is_readable(path):
            raise RequestRejected(error_code=constants.ERR_ACCESS_VIOLATION)
        try:
            response_data = files.FileResponseData(path)
        except FileNotFoundError:
            raise RequestRejected(error_code=constants.ERR_FILE_NOT_FOUND)
        except OSError as e:
            raise RequestRejected(str(e), constants.ERR_ACCESS_VIOLATION)
        try:
            logging.debug("Sending %d bytes of %r" % (response_data.size(), path))
            self._engine(stats).send(response_data)
        finally:
            logging.debug("Closing response data object")
            response_data.close()

    def _handle_write(self, path, stats):
        if not files.is_writable(path):
            raise RequestRejected(error_code=constants.ERR_ACCESS_VIOLATION)
        if os.path.exists(path):
            raise RequestRejected(error_code=constants.ERR_FILE_EXISTS)
        try:
            sink = open(path, "xb")
        except FileExistsError:
            raise RequestRejected(error_code=constants.ERR_FILE_EXISTS)
        except OSError as e:
            code = constants.ERR_ACCESS_VIOLATION
            if e.errno == errno.ENOSPC:
                code = constants.ERR_DISK_FULL
            raise RequestRejected(str(e), code)
        completed = False
        try:
            with sink:
                self._engine(stats).receive(sink, Ack(0))
            completed = True
        finally:
            if not completed:
                logging.info("Removing partially written file %r" % path)
                os.unlink(path)


class DatagramSession(BaseSession):
    """One UDP transfer, on its own ephemeral port."""

    def __init__(self, channel, request, root, retries, timeout, **kwargs):
        super().__init__(channel, root, retries, timeout, **kwargs)
        self._request = request

    def _serve(self):
        try:
            self.handle_request(self._request)
        except TftpError:
            # already logged and reported by handle_request
            return


class StreamSession(BaseSession):
    """
    One TCP connection. Requests are served one after the other until the
    peer hangs up, stays idle too long, or a transfer breaks the stream.
    """

    def _next_request(self):
        # the idle wait gets the same budget as a transfer waiting for a block
        for _ in range(self._retries + 1):
            if self._stop_event.is_set():
                return None
            request = self._channel.receive(self._timeout)
            if request is not None:
                return request
        logging.info("Peer %r stayed idle, closing connection" % (self.peer,))
        return None

    def _serve(self):
        while not self._stop_event.is_set():
            try:
                request = self._next_request()
            except MalformedPacket as e:
                logging.warning("Malformed request from %r: %s" % (self.peer, e))
                self._channel.send(Error.from_exception(e))
                return
            except TftpError as e:
                logging.info("Connection with %r ended: %s" % (self.peer, e))
                return
            if request is None:
                return
            if request.opcode not in constants.REQUEST_OPCODES:
                logging.error(
                    "Expected a request from %r, got opcode %d"
                    % (self.peer, request.opcode)
                )
                if request.opcode != constants.OPCODE_ERROR:
                    self._channel.send(
                        Error(constants.ERR_ILLEGAL_OPERATION, "Expected a request")
                    )
                return
            try:
                self.handle_request(request)
            except TftpError:
                return
