#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from .client import Client
from .engine import SessionStats, TransferEngine
from .exceptions import (
    ConnectionClosed,
    MalformedPacket,
    PeerError,
    ProtocolViolation,
    RequestRejected,
    TftpError,
    TransferCancelled,
    TransferTimeout,
    UnknownPeer,
)
from .server import BaseServer, DatagramServer, ServerStats, StreamServer

__all__ = [
    "BaseServer",
    "Client",
    "ConnectionClosed",
    "DatagramServer",
    "MalformedPacket",
    "PeerError",
    "ProtocolViolation",
    "RequestRejected",
    "ServerStats",
    "SessionStats",
    "StreamServer",
    "TftpError",
    "TransferCancelled",
    "TransferEngine",
    "TransferTimeout",
    "UnknownPeer",
]
