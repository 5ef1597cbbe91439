#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import collections
import concurrent.futures
import ipaddress
import logging
import select
import socket
import threading
import time

from . import constants
from . import packet as tftp_packet
from .exceptions import MalformedPacket, RequestRejected
from .session import DatagramSession, StreamSession, validate_request
from .transport import DatagramChannel, StreamChannel


class ServerStats:
    def __init__(self, server_addr=None, interval=None):
        """
        `ServerStats` holds counters describing what the server did. It is
        handed to the `server_stats_callback` of `BaseServer` every
        `interval` seconds by a background timer thread.

        All operations are atomic. A publishing callback will usually call
        `get_and_reset_all_counters` so that every interval starts fresh.

        Args:
            server_addr (str): the address the server is bound to.
            interval (int): stats interval in seconds.
        """
        self.server_addr = server_addr
        self.interval = interval
        self.start_time = time.time()
        self._counters = collections.Counter()
        self._counters_lock = threading.Lock()

    def get_all_counters(self):
        with self._counters_lock:
            return dict(self._counters)

    def get_and_reset_all_counters(self):
        with self._counters_lock:
            counters = dict(self._counters)
            self._counters.clear()
        return counters

    def get_counter(self, name):
        return self._counters[name]

    def increment_counter(self, name, increment=1):
        with self._counters_lock:
            self._counters[name] += increment

    def reset_all_counters(self):
        with self._counters_lock:
            self._counters.clear()

    def duration(self):
        """Server uptime in seconds."""
        return time.time() - self.start_time


class BaseServer:
    def __init__(
        self,
        address,
        port,
        root,
        retries=constants.DEFAULT_RETRIES,
        timeout=constants.DEFAULT_TIMEOUT,
        max_sessions=constants.DEFAULT_MAX_SESSIONS,
        block_size=constants.DEFAULT_BLKSIZE,
        session_stats_callback=None,
        server_stats_callback=None,
        stats_interval_seconds=constants.DATAPOINTS_INTERVAL_SECONDS,
    ):
        """
        This base class implements the dispatcher loop, which accepts new
        requests and hands each of them to a session running in a bounded
        pool of worker threads.

        Note:
            Use `DatagramServer` or `StreamServer`, which create the
            listening socket and the sessions.

        Args:
            address (str): address (IPv4 or IPv6) the server binds to.

            port (int): the port the server binds to, 0 lets the kernel pick.

            root (str): directory files are served from and written to.

            retries (int): how many times a session retries a packet before it
                gives up on the transfer.

            timeout (float): seconds a session waits for the peer's next
                packet.

            max_sessions (int): maximum number of concurrent sessions. When
                all are busy the dispatcher stops reading the listening
                socket and new requests wait in the kernel's buffers.

            block_size (int): DATA payload size.

            session_stats_callback (callable): gets a `SessionStats` at the end
                of every transfer.

            server_stats_callback (callable): gets the `ServerStats` every
                `stats_interval_seconds`, from a background thread. It is not
                re-entrant.

            stats_interval_seconds (int): how often `server_stats_callback`
                runs.
        """
        self._address = address
        self._port = port
        self._root = root
        self._retries = retries
        self._timeout = timeout
        self._block_size = block_size
        self._session_stats_callback = session_stats_callback
        self._server_stats_callback = server_stats_callback
        # the format of the peer tuple is different for v4 and v6
        self._family = socket.AF_INET6
        if isinstance(ipaddress.ip_address(self._address), ipaddress.IPv4Address):
            self._family = socket.AF_INET
        self._listener = self._create_listener()
        self._listener.setblocking(0)  # non-blocking
        self._listener.bind((address, port))
        self._start_listening()
        self._waker_r, self._waker_w = socket.socketpair()
        self._epoll = select.epoll()
        self._epoll.register(self._listener.fileno(), select.EPOLLIN)
        self._epoll.register(self._waker_r.fileno(), select.EPOLLIN)
        self._should_stop = False
        self._server_stats = ServerStats(address, stats_interval_seconds)
        self._metrics_timer = None
        self._sessions = set()
        self._sessions_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_sessions)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_sessions, thread_name_prefix="octftp-session"
        )

    def _create_listener(self):
        raise NotImplementedError()

    def _start_listening(self):
        pass

    @property
    def server_address(self):
        return self._listener.getsockname()

    @property
    def server_stats(self):
        return self._server_stats

    def active_sessions(self):
        with self._sessions_lock:
            return len(self._sessions)

    def run(self, run_once=False):
        """
        Run the serving loop until `stop` or `close` is called.

        Args:
            run_once (bool): If True it will exit the loop after first
                iteration.  Note this is only used in unit tests.
        """
        # First start of the server stats thread
        self.restart_stats_timer(run_once)

        try:
            while not self._should_stop:
                self.run_once()
                if run_once:
                    break
        finally:
            self._epoll.close()
            self._listener.close()
            self._waker_r.close()
            if self._metrics_timer is not None:
                self._metrics_timer.cancel()

    def _metrics_callback_wrapper(self, run_once=False):
        """
        Hands the server stats to the user callback and logs whatever it
        raises. The timer is armed again unless the server is stopping or
        run_once is set.
        """
        logging.debug("Running the metrics callback")
        try:
            self._server_stats_callback(self._server_stats)
        except Exception as exc:
            logging.exception(str(exc))
        if not run_once and not self._should_stop:
            self.restart_stats_timer()

    def restart_stats_timer(self, run_once=False):
        """
        Arms the timer that publishes server stats, when a callback is set.
        """
        if self._server_stats_callback is None:
            logging.warning(
                "No callback specified for server statistics "
                "logging, will continue without"
            )
            return
        self._metrics_timer = threading.Timer(
            self._server_stats.interval, self._metrics_callback_wrapper, [run_once]
        )
        self._metrics_timer.daemon = True
        logging.debug(
            "Starting the metrics callback in {sec}s".format(
                sec=self._server_stats.interval
            )
        )
        self._metrics_timer.start()

    def run_once(self):
        """
        Waits on the epoll object until the listening socket is readable or
        `stop` wakes us up.
        """
        events = self._epoll.poll()
        for fileno, eventmask in events:
            if not eventmask & select.EPOLLIN:
                continue
            if fileno == self._waker_r.fileno():
                self._waker_r.recv(64)
                continue
            if fileno == self._listener.fileno() and not self._should_stop:
                self.on_new_data()

    def on_new_data(self):
        """Called when the listening socket is readable."""
        raise NotImplementedError()

    def _acquire_slot(self):
        while not self._slots.acquire(timeout=self._timeout):
            if self._should_stop:
                return False
            logging.warning("All session slots are busy, waiting")
        return True

    def spawn(self, session):
        """
        Runs `session` on the worker pool. Blocks while the pool is full, so
        that pending requests wait in the kernel rather than in memory.
        """
        if not self._acquire_slot():
            session.close()
            return
        with self._sessions_lock:
            if self._should_stop:
                self._slots.release()
                session.close()
                return
            self._sessions.add(session)
            self._executor.submit(self._run_session, session)
        self._server_stats.increment_counter("sessions_started")

    def _run_session(self, session):
        try:
            session.run()
        except Exception as e:
            logging.exception("Session with %r raised: %s" % (session.peer, e))
        finally:
            with self._sessions_lock:
                self._sessions.discard(session)
            self._slots.release()

    def _on_session_stats(self, stats):
        if stats.error:
            self._server_stats.increment_counter("sessions_failed")
        if self._session_stats_callback is not None:
            self._session_stats_callback(stats)

    def _session_kwargs(self):
        return {
            "block_size": self._block_size,
            "stats_callback": self._on_session_stats,
        }

    def close(self):
        """
        Stops the dispatcher loop, by setting a boolean flag which will be
        picked by the main while loop. Running sessions are left alone.
        """
        self._should_stop = True
        try:
            self._waker_w.send(b"\x00")
        except OSError as e:
            logging.debug("Could not wake the dispatcher: %s" % e)

    def stop(self):
        """
        Stops the dispatcher loop and every running session, then waits for
        the worker threads to exit. Transfers in flight are abandoned.
        """
        with self._sessions_lock:
            self.close()
            sessions = list(self._sessions)
        logging.info("Stopping server, interrupting %d sessions" % len(sessions))
        for session in sessions:
            session.stop()
        self._executor.shutdown(wait=True)
        self._waker_w.close()


class DatagramServer(BaseServer):
    """Serves TFTP over UDP, every transfer gets its own ephemeral port."""

    def _create_listener(self):
        return socket.socket(self._family, socket.SOCK_DGRAM)

    def _reply_error(self, peer, error):
        reply = tftp_packet.encode(tftp_packet.Error.from_exception(error))
        try:
            self._listener.sendto(reply, peer)
        except OSError as e:
            logging.warning("Could not send error to %r: %s" % (peer, e))

    def on_new_data(self):
        """
        Deals with one incoming datagram on the well-known port. Only RRQ and
        WRQ are accepted here; a valid request gets a fresh socket, which
        becomes the server side of the transfer ID, and a new session.
        """
        data, peer = self._listener.recvfrom(constants.MAX_PACKET_SIZE)
        try:
            request = tftp_packet.decode(data)
        except MalformedPacket as e:
            logging.warning("Malformed packet from %r: %s" % (peer, e))
            self._server_stats.increment_counter("malformed_packets")
            self._reply_error(peer, e)
            return

        if request.opcode not in constants.REQUEST_OPCODES:
            logging.warning(
                "unexpected TFTP opcode %d from %r, expected a request"
                % (request.opcode, peer)
            )
            if request.opcode != constants.OPCODE_ERROR:
                self._reply_error(
                    peer,
                    RequestRejected(
                        "Unexpected packet type",
                        constants.ERR_ILLEGAL_OPERATION,
                    ),
                )
            return

        try:
            validate_request(request)
        except RequestRejected as e:
            logging.warning("Rejecting request from %r: %s" % (peer, e))
            self._server_stats.increment_counter("requests_rejected")
            self._reply_error(peer, e)
            return

        sock = socket.socket(self._family, socket.SOCK_DGRAM)
        try:
            sock.bind((self._address, 0))
        except OSError:
            sock.close()
            raise
        channel = DatagramChannel(sock, peer)
        session = DatagramSession(
            channel,
            request,
            self._root,
            self._retries,
            self._timeout,
            **self._session_kwargs()
        )
        self.spawn(session)


class StreamServer(BaseServer):
    """
    Serves TFTP over TCP with the stream framing. Every connection is one
    session and may carry several transfers, one after the other.
    """

    def _create_listener(self):
        listener = socket.socket(self._family, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return listener

    def _start_listening(self):
        self._listener.listen(socket.SOMAXCONN)

    def on_new_data(self):
        try:
            conn, peer = self._listener.accept()
        except BlockingIOError:
            # the client went away before we got to it
            return
        conn.setblocking(True)
        logging.info("New connection from %r" % (peer,))
        session = StreamSession(
            StreamChannel(conn, peer),
            self._root,
            self._retries,
            self._timeout,
            **self._session_kwargs()
        )
        self.spawn(session)
