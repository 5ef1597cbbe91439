#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# TFTP opcodes
OPCODE_RRQ = 1
OPCODE_WRQ = 2
OPCODE_DATA = 3
OPCODE_ACK = 4
OPCODE_ERROR = 5

REQUEST_OPCODES = (OPCODE_RRQ, OPCODE_WRQ)

# TFTP modes (encodings), octet is the only one we transfer
MODE_BINARY = "octet"

# TFTP error codes
ERR_UNDEFINED = 0  # Not defined, see error msg (if any) - RFC 1350.
ERR_FILE_NOT_FOUND = 1  # File not found - RFC 1350.
ERR_ACCESS_VIOLATION = 2  # Access violation - RFC 1350.
ERR_DISK_FULL = 3  # Disk full or allocation exceeded - RFC 1350.
ERR_ILLEGAL_OPERATION = 4  # Illegal TFTP operation - RFC 1350.
ERR_UNKNOWN_TRANSFER_ID = 5  # Unknown transfer ID - RFC 1350.
ERR_FILE_EXISTS = 6  # File already exists - RFC 1350.
ERR_NO_SUCH_USER = 7  # No such user - RFC 1350.

ERROR_MESSAGES = {
    ERR_UNDEFINED: "Not defined.",
    ERR_FILE_NOT_FOUND: "File not found.",
    ERR_ACCESS_VIOLATION: "Access violation.",
    ERR_DISK_FULL: "Disk full or allocation exceeded.",
    ERR_ILLEGAL_OPERATION: "Illegal TFTP operation.",
    ERR_UNKNOWN_TRANSFER_ID: "Unknown transfer ID.",
    ERR_FILE_EXISTS: "File already exists.",
    ERR_NO_SUCH_USER: "No such user.",
}

# TFTP's block number is an unsigned 16 bit integer. The counter rolls over
# to 0 after this value; transfers that long are not otherwise supported.
MAX_BLOCK_NUMBER = 65535

# this is the default blksize as defined by RFC 1350
DEFAULT_BLKSIZE = 512

# Largest packet we are willing to read or buffer, in either framing.
MAX_PACKET_SIZE = 65536

# Stream framing: Data and Error carry a 32 bit length before their payload.
STREAM_LENGTH_SIZE = 4

TRANSPORT_UDP = "udp"
TRANSPORT_TCP = "tcp"
TRANSPORTS = (TRANSPORT_UDP, TRANSPORT_TCP)

# Session defaults
DEFAULT_PORT = 6969
DEFAULT_RETRIES = 5
DEFAULT_TIMEOUT = 5  # seconds
DEFAULT_MAX_SESSIONS = 10

# Metric-related constants
# How many seconds to aggregate before sampling datapoints
DATAPOINTS_INTERVAL_SECONDS = 60
