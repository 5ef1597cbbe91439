#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import argparse
import logging
import os
import signal
import sys

from . import constants
from .client import Client
from .exceptions import TftpError
from .server import DatagramServer, StreamServer

LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"


def print_session_stats(stats):
    logging.info("Stats: for %r requesting %r" % (stats.peer, stats.file_path))
    logging.info("Direction: %s" % stats.direction)
    logging.info("Error: %r" % stats.error)
    logging.info("Time spent: %dms" % (stats.duration() * 1e3))
    logging.info("Packets sent: %d" % stats.packets_sent)
    logging.info("Packets ACKed: %d" % stats.packets_acked)
    logging.info("Bytes sent: %d" % stats.bytes_sent)
    logging.info("Bytes received: %d" % stats.bytes_received)
    logging.info("Retransmits: %d" % stats.retransmits)


def print_server_stats(stats):
    """
    Print server stats - see the ServerStats class
    """
    # NOTE: remember to reset the counters you use, to allow the next cycle to
    #       start fresh
    counters = stats.get_and_reset_all_counters()
    logging.info("Server stats - every %d seconds" % stats.interval)
    for name in sorted(counters):
        logging.info("%s: %d" % (name, counters[name]))


def _add_common_arguments(parser):
    parser.add_argument(
        "--port", type=int, default=constants.DEFAULT_PORT, help="TFTP port"
    )
    parser.add_argument(
        "--transport",
        choices=constants.TRANSPORTS,
        default=constants.TRANSPORT_UDP,
        help="udp for plain TFTP, tcp for the stream framing",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=constants.DEFAULT_RETRIES,
        help="number of per-packet retries",
    )
    parser.add_argument(
        "--timeout_s",
        type=float,
        default=constants.DEFAULT_TIMEOUT,
        help="timeout for packet retransmission",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")


def get_server_arguments(argv=None):
    parser = argparse.ArgumentParser(description="octet-mode TFTP server")
    parser.add_argument("--ip", type=str, default="::", help="IP address to bind to")
    _add_common_arguments(parser)
    parser.add_argument(
        "--max_sessions",
        type=int,
        default=constants.DEFAULT_MAX_SESSIONS,
        help="maximum number of concurrent transfers",
    )
    parser.add_argument(
        "--root", type=str, default=".", help="directory files are served from"
    )
    parser.add_argument(
        "--stats_interval_s",
        type=int,
        default=constants.DATAPOINTS_INTERVAL_SECONDS,
        help="how often server stats are logged",
    )
    return parser.parse_args(argv)


def get_client_arguments(argv=None):
    parser = argparse.ArgumentParser(description="octet-mode TFTP client")
    parser.add_argument(
        "--server", type=str, default="localhost", help="server name or address"
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "command",
        choices=("get", "put"),
        help="get fetches a remote file, put sends a local one",
    )
    parser.add_argument("filename", help="remote file for get, local file for put")
    parser.add_argument(
        "target",
        nargs="?",
        default=None,
        help="where to store the file, defaults to the base name of filename",
    )
    return parser.parse_args(argv)


def _setup_logging(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT
    )


def server_main(argv=None):
    args = get_server_arguments(argv)
    _setup_logging(args.verbose)
    server_class = DatagramServer
    if args.transport == constants.TRANSPORT_TCP:
        server_class = StreamServer
    server = server_class(
        args.ip,
        args.port,
        args.root,
        retries=args.retries,
        timeout=args.timeout_s,
        max_sessions=args.max_sessions,
        session_stats_callback=print_session_stats,
        server_stats_callback=print_server_stats,
        stats_interval_seconds=args.stats_interval_s,
    )
    logging.info(
        "Serving %r over %s on %r" % (args.root, args.transport, server.server_address)
    )
    signal.signal(signal.SIGTERM, lambda signum, frame: server.close())
    try:
        server.run()
    except KeyboardInterrupt:
        logging.info("Caught KeyboardInterrupt, will exit.")
    finally:
        server.stop()
    return 0


def client_main(argv=None):
    args = get_client_arguments(argv)
    _setup_logging(args.verbose)
    target = args.target or os.path.basename(args.filename)
    client = Client(
        args.server,
        args.port,
        retries=args.retries,
        timeout=args.timeout_s,
        transport=args.transport,
    )
    try:
        if args.command == "get":
            stats = client.download(args.filename, target)
        else:
            stats = client.upload(args.filename, target)
    except KeyboardInterrupt:
        print("Aborted", file=sys.stderr)
        return 1
    except (TftpError, OSError, ValueError) as e:
        print("Error: %s" % e, file=sys.stderr)
        return 1
    print(
        "Transferred %d bytes in %.3fs (%d retransmits)"
        % (
            stats.bytes_received or stats.bytes_sent,
            stats.duration(),
            stats.retransmits,
        )
    )
    return 0
