#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Encoding and decoding of TFTP packets.

Two framings are supported. The datagram framing is plain RFC 1350, where the
end of a DATA payload or of an ERROR message is given by the end of the
datagram:

       2 bytes     string    1 byte     string   1 byte
     ------------------------------------------------
    | Opcode |  Filename  |   0  |    Mode    |   0  |   RRQ/WRQ
     ------------------------------------------------
       2 bytes     2 bytes      n bytes
     ---------------------------------
    | Opcode |   Block #  |   Data     |                  DATA
     ---------------------------------
       2 bytes     2 bytes
     ---------------------
    | Opcode |   Block #  |                               ACK
     ---------------------
       2 bytes     2 bytes      string    1 byte
     -----------------------------------------
    | Opcode |  ErrorCode |   ErrMsg   |   0  |            ERROR
     -----------------------------------------

The stream framing is used over TCP, where there are no packet boundaries.
Requests and ACKs are unchanged, DATA and ERROR carry a 32 bit length right
after their 16 bit header field and the error message has no terminator.
"""

from collections import namedtuple
import struct

from . import constants
from .exceptions import MalformedPacket

_HEADER = struct.Struct("!H")
_HEADER_WITH_FIELD = struct.Struct("!HH")
_STREAM_HEADER = struct.Struct("!HHI")


class Request(namedtuple("Request", ["opcode", "filename", "mode"])):
    """RRQ or WRQ, the direction is the opcode."""

    __slots__ = ()

    @property
    def is_read(self):
        return self.opcode == constants.OPCODE_RRQ

    @property
    def is_write(self):
        return self.opcode == constants.OPCODE_WRQ


class Data(namedtuple("Data", ["block_number", "payload"])):
    __slots__ = ()
    opcode = constants.OPCODE_DATA


class Ack(namedtuple("Ack", ["block_number"])):
    __slots__ = ()
    opcode = constants.OPCODE_ACK


class Error(namedtuple("Error", ["error_code", "message"])):
    __slots__ = ()
    opcode = constants.OPCODE_ERROR

    @classmethod
    def from_exception(cls, exc):
        return cls(exc.error_code, exc.message)


def read_request(filename, mode=constants.MODE_BINARY):
    return Request(constants.OPCODE_RRQ, filename, mode)


def write_request(filename, mode=constants.MODE_BINARY):
    return Request(constants.OPCODE_WRQ, filename, mode)


def _check_field(name, value):
    if not value:
        raise ValueError("%s must not be empty" % name)
    if "\x00" in value:
        raise ValueError("%s must not contain null bytes" % name)
    try:
        return value.encode("ascii")
    except UnicodeEncodeError:
        raise ValueError("%s must be ASCII: %r" % (name, value))


def _encode_request(packet):
    if packet.opcode not in constants.REQUEST_OPCODES:
        raise ValueError("not a request opcode: %r" % (packet.opcode,))
    return (
        _HEADER.pack(packet.opcode)
        + _check_field("filename", packet.filename)
        + b"\x00"
        + _check_field("mode", packet.mode)
        + b"\x00"
    )


def _encode_message(message):
    return message.encode("ascii", "replace").replace(b"\x00", b"")


def encode(packet):
    """Serializes `packet` for the datagram framing."""
    if packet.opcode in constants.REQUEST_OPCODES:
        return _encode_request(packet)
    if packet.opcode == constants.OPCODE_DATA:
        return _HEADER_WITH_FIELD.pack(packet.opcode, packet.block_number) + bytes(
            packet.payload
        )
    if packet.opcode == constants.OPCODE_ACK:
        return _HEADER_WITH_FIELD.pack(packet.opcode, packet.block_number)
    if packet.opcode == constants.OPCODE_ERROR:
        return (
            _HEADER_WITH_FIELD.pack(packet.opcode, packet.error_code)
            + _encode_message(packet.message)
            + b"\x00"
        )
    raise ValueError("cannot encode opcode %r" % (packet.opcode,))


def encode_stream(packet):
    """Serializes `packet` for the stream framing."""
    if packet.opcode == constants.OPCODE_DATA:
        payload = bytes(packet.payload)
        return (
            _STREAM_HEADER.pack(packet.opcode, packet.block_number, len(payload))
            + payload
        )
    if packet.opcode == constants.OPCODE_ERROR:
        message = _encode_message(packet.message)
        return (
            _STREAM_HEADER.pack(packet.opcode, packet.error_code, len(message))
            + message
        )
    return encode(packet)


def _decode_field(raw, name):
    if not raw:
        raise MalformedPacket("Empty %s in request" % name)
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError:
        raise MalformedPacket("Non-ASCII %s in request" % name)


def _decode_request(opcode, body):
    # anything after the mode terminator is an option list, which we ignore
    tokens = body.split(b"\x00", 2)
    if len(tokens) < 3:
        raise MalformedPacket("Request is missing a null terminator")
    return Request(
        opcode, _decode_field(tokens[0], "filename"), _decode_field(tokens[1], "mode")
    )


def _unpack_field(body, kind):
    if len(body) < 2:
        raise MalformedPacket("%s packet shorter than its header" % kind)
    return struct.unpack("!H", body[:2])[0]


def _decode_data(opcode, body):
    return Data(_unpack_field(body, "DATA"), bytes(body[2:]))


def _decode_ack(opcode, body):
    return Ack(_unpack_field(body, "ACK"))


def _decode_error(opcode, body):
    code = _unpack_field(body, "ERROR")
    message = body[2:].split(b"\x00", 1)[0]
    return Error(code, message.decode("ascii", "replace"))


_DECODERS = {
    constants.OPCODE_RRQ: _decode_request,
    constants.OPCODE_WRQ: _decode_request,
    constants.OPCODE_DATA: _decode_data,
    constants.OPCODE_ACK: _decode_ack,
    constants.OPCODE_ERROR: _decode_error,
}


def decode(data):
    """
    Parses a datagram into a packet.

    Raises:
        MalformedPacket: the datagram is not a valid TFTP packet.
    """
    if len(data) < 2:
        raise MalformedPacket("Packet shorter than an opcode")
    opcode = _HEADER.unpack(data[:2])[0]
    try:
        decoder = _DECODERS[opcode]
    except KeyError:
        raise MalformedPacket("Unknown opcode %d" % opcode)
    return decoder(opcode, data[2:])


class StreamDecoder:
    """
    Incremental decoder for the stream framing.

    Bytes are pushed with `feed` as they come off the connection and complete
    packets are pulled with `next_packet`. A packet split across several
    reads, or across a receive timeout, stays buffered until it is complete.
    """

    def __init__(self, max_packet_size=constants.MAX_PACKET_SIZE):
        self._buffer = bytearray()
        self._max_packet_size = max_packet_size

    def feed(self, data):
        self._buffer.extend(data)

    def buffered(self):
        return len(self._buffer)

    def next_packet(self):
        """Returns the next complete packet, or None if more bytes are needed."""
        if len(self._buffer) < 2:
            return None
        opcode = _HEADER.unpack_from(self._buffer)[0]
        if opcode in constants.REQUEST_OPCODES:
            return self._next_request(opcode)
        if opcode == constants.OPCODE_ACK:
            if len(self._buffer) < _HEADER_WITH_FIELD.size:
                return None
            packet = _decode_ack(opcode, bytes(self._buffer[2:4]))
            del self._buffer[:4]
            return packet
        if opcode in (constants.OPCODE_DATA, constants.OPCODE_ERROR):
            return self._next_sized(opcode)
        raise MalformedPacket("Unknown opcode %d" % opcode)

    def _next_request(self, opcode):
        first = self._buffer.find(b"\x00", 2)
        second = self._buffer.find(b"\x00", first + 1) if first != -1 else -1
        if second == -1:
            if len(self._buffer) > self._max_packet_size:
                raise MalformedPacket("Request exceeds %d bytes" % self._max_packet_size)
            return None
        packet = _decode_request(opcode, bytes(self._buffer[2 : second + 1]))
        del self._buffer[: second + 1]
        return packet

    def _next_sized(self, opcode):
        if len(self._buffer) < _STREAM_HEADER.size:
            return None
        _, field, length = _STREAM_HEADER.unpack_from(self._buffer)
        if length > self._max_packet_size:
            raise MalformedPacket("Declared length %d is too large" % length)
        end = _STREAM_HEADER.size + length
        if len(self._buffer) < end:
            return None
        body = bytes(self._buffer[_STREAM_HEADER.size : end])
        del self._buffer[:end]
        if opcode == constants.OPCODE_DATA:
            return Data(field, body)
        return Error(field, body.decode("ascii", "replace"))
