#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import socket
import threading
import time
import unittest

from octftp import constants
from octftp.exceptions import ConnectionClosed, MalformedPacket, TransferCancelled
from octftp.packet import Ack, Data, Error, decode, encode, encode_stream
from octftp.transport import DatagramChannel, StreamChannel


def udp_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    return sock


class testDatagramChannel(unittest.TestCase):
    def setUp(self):
        self.peer_sock = udp_socket()
        self.addCleanup(self.peer_sock.close)
        self.channel = DatagramChannel(udp_socket(), self.peer_sock.getsockname())
        self.addCleanup(self.channel.close)

    def testSendAndReceive(self):
        self.channel.send(Data(1, b"abc"))
        data, sender = self.peer_sock.recvfrom(constants.MAX_PACKET_SIZE)
        self.assertEqual(decode(data), Data(1, b"abc"))
        self.assertEqual(sender, self.channel.local_address)
        self.peer_sock.sendto(encode(Ack(1)), sender)
        self.assertEqual(self.channel.receive(5), Ack(1))

    def testTimeout(self):
        start = time.monotonic()
        self.assertIsNone(self.channel.receive(0.05))
        self.assertGreaterEqual(time.monotonic() - start, 0.04)

    def testUnknownPeerIsRejected(self):
        stranger = udp_socket()
        self.addCleanup(stranger.close)
        stranger.sendto(encode(Ack(1)), self.channel.local_address)
        self.assertIsNone(self.channel.receive(0.2))
        data, _ = stranger.recvfrom(constants.MAX_PACKET_SIZE)
        reply = decode(data)
        self.assertEqual(reply.opcode, constants.OPCODE_ERROR)
        self.assertEqual(reply.error_code, constants.ERR_UNKNOWN_TRANSFER_ID)
        # the transfer carries on with the real peer
        self.peer_sock.sendto(encode(Ack(2)), self.channel.local_address)
        self.assertEqual(self.channel.receive(5), Ack(2))
        self.assertEqual(self.channel.peer, self.peer_sock.getsockname())

    def testMalformedPacket(self):
        self.peer_sock.sendto(b"\x00", self.channel.local_address)
        with self.assertRaises(MalformedPacket):
            self.channel.receive(5)

    def testInterrupt(self):
        self.channel.interrupt()
        with self.assertRaises(TransferCancelled):
            self.channel.receive(5)

    def testInterruptFromAnotherThread(self):
        timer = threading.Timer(0.1, self.channel.interrupt)
        timer.start()
        self.addCleanup(timer.cancel)
        start = time.monotonic()
        with self.assertRaises(TransferCancelled):
            self.channel.receive(10)
        self.assertLess(time.monotonic() - start, 5)

    def testCloseIsIdempotent(self):
        self.channel.close()
        self.channel.close()


class testUnlockedDatagramChannel(unittest.TestCase):
    def setUp(self):
        self.server = udp_socket()
        self.addCleanup(self.server.close)
        self.transfer = udp_socket()
        self.addCleanup(self.transfer.close)
        self.channel = DatagramChannel(
            udp_socket(), self.server.getsockname(), lock_peer=False
        )
        self.addCleanup(self.channel.close)

    def testTransferIdIsLearned(self):
        self.assertFalse(self.channel.locked)
        self.channel.send(Ack(0))
        _, client = self.server.recvfrom(constants.MAX_PACKET_SIZE)
        self.transfer.sendto(encode(Data(1, b"")), client)
        self.assertEqual(self.channel.receive(5), Data(1, b""))
        self.assertTrue(self.channel.locked)
        self.assertEqual(self.channel.peer, self.transfer.getsockname())
        # later packets go to the learned endpoint
        self.channel.send(Ack(1))
        data, _ = self.transfer.recvfrom(constants.MAX_PACKET_SIZE)
        self.assertEqual(decode(data), Ack(1))

    def testOtherPortRejectedOnceLocked(self):
        self.transfer.sendto(encode(Data(1, b"a")), self.channel.local_address)
        self.assertEqual(self.channel.receive(5), Data(1, b"a"))
        self.server.sendto(encode(Ack(7)), self.channel.local_address)
        self.assertIsNone(self.channel.receive(0.2))
        data, _ = self.server.recvfrom(constants.MAX_PACKET_SIZE)
        self.assertEqual(decode(data).error_code, constants.ERR_UNKNOWN_TRANSFER_ID)


class testStreamChannel(unittest.TestCase):
    def setUp(self):
        ours, self.theirs = socket.socketpair()
        self.addCleanup(self.theirs.close)
        self.channel = StreamChannel(ours, "peer")
        self.addCleanup(self.channel.close)

    def testReliable(self):
        self.assertTrue(self.channel.reliable)

    def testSend(self):
        self.channel.send(Error(1, "nope"))
        self.assertEqual(
            self.theirs.recv(constants.MAX_PACKET_SIZE),
            encode_stream(Error(1, "nope")),
        )

    def testReceiveSplitPacket(self):
        wire = encode_stream(Data(1, b"abcdef"))
        self.theirs.sendall(wire[:5])
        self.assertIsNone(self.channel.receive(0.05))
        self.theirs.sendall(wire[5:] + encode_stream(Ack(4)))
        self.assertEqual(self.channel.receive(5), Data(1, b"abcdef"))
        self.assertEqual(self.channel.receive(5), Ack(4))

    def testConnectionClosed(self):
        self.theirs.close()
        with self.assertRaises(ConnectionClosed):
            self.channel.receive(5)

    def testConnectionClosedMidPacket(self):
        self.theirs.sendall(encode_stream(Data(1, b"abcdef"))[:9])
        self.theirs.shutdown(socket.SHUT_WR)
        with self.assertRaises(ConnectionClosed):
            self.channel.receive(5)

    def testInterrupt(self):
        timer = threading.Timer(0.1, self.channel.interrupt)
        timer.start()
        self.addCleanup(timer.cancel)
        with self.assertRaises(TransferCancelled):
            self.channel.receive(10)


if __name__ == "__main__":
    unittest.main()
