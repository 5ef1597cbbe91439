#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from . import constants


class TftpError(Exception):
    """
    Base class of every failure raised by octftp.

    `error_code` is the TFTP error code that describes the failure on the
    wire. `notify_peer` tells whether an ERROR packet should be sent to the
    other side when this exception ends a transfer.
    """

    error_code = constants.ERR_UNDEFINED
    notify_peer = True

    def __init__(self, message=None, error_code=None):
        if error_code is not None:
            self.error_code = error_code
        if message is None:
            message = constants.ERROR_MESSAGES.get(
                self.error_code, constants.ERROR_MESSAGES[constants.ERR_UNDEFINED]
            )
        super().__init__(message)

    @property
    def message(self):
        return str(self)

    def as_dict(self):
        return {"error_code": self.error_code, "error_message": self.message}


class MalformedPacket(TftpError):
    error_code = constants.ERR_ILLEGAL_OPERATION


class ProtocolViolation(TftpError):
    error_code = constants.ERR_ILLEGAL_OPERATION


class RequestRejected(TftpError):
    """A request refused before any data was exchanged."""


class TransferTimeout(TftpError):
    notify_peer = False


class PeerError(TftpError):
    """The remote end sent an ERROR packet."""

    notify_peer = False

    def __init__(self, error_code, message):
        super().__init__(message, error_code)


class UnknownPeer(TftpError):
    error_code = constants.ERR_UNKNOWN_TRANSFER_ID

    def __init__(self, peer, expected):
        self.peer = peer
        self.expected = expected
        super().__init__(
            "Unknown transfer ID: got %r, expected %r" % (peer, expected)
        )


class TransferCancelled(TftpError):
    notify_peer = False


class ConnectionClosed(TftpError):
    notify_peer = False
