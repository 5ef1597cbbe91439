#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from unittest.mock import patch
import os
import tempfile
import unittest

from octftp import constants
from octftp.client import Client
from octftp.exceptions import PeerError, TftpError, TransferCancelled
from octftp.packet import Ack, Data, Error, read_request, write_request

from tftp_mocks import MockChannel, acking_peer, serving_peer


class testClient(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.local = os.path.join(self.tmpdir.name, "local")
        self.client = Client("127.0.0.1", 6969, retries=2, timeout=0.01)

    def with_channel(self, channel):
        patcher = patch.object(Client, "_open_channel", return_value=channel)
        patcher.start()
        self.addCleanup(patcher.stop)
        return channel

    def testUnknownTransport(self):
        with self.assertRaises(ValueError):
            Client("127.0.0.1", transport="sctp")

    def testDownload(self):
        channel = self.with_channel(
            MockChannel(
                responder=serving_peer([Data(1, b"a" * 512), Data(2, b"b" * 488)])
            )
        )
        stats = self.client.download("remote", self.local)
        self.assertEqual(channel.sent, [read_request("remote"), Ack(1), Ack(2)])
        self.assertTrue(channel.closed)
        self.assertEqual(stats.bytes_received, 1000)
        self.assertEqual(stats.direction, "read")
        self.assertEqual(stats.error, {})
        with open(self.local, "rb") as f:
            self.assertEqual(f.read(), b"a" * 512 + b"b" * 488)

    def testDownloadMissingFileRemovesLocalFile(self):
        channel = self.with_channel(
            MockChannel(responder=lambda p: [Error(1, "File not found.")])
        )
        with self.assertRaises(PeerError) as cm:
            self.client.download("remote", self.local)
        self.assertEqual(cm.exception.error_code, constants.ERR_FILE_NOT_FOUND)
        self.assertEqual(channel.sent, [read_request("remote")])
        self.assertTrue(channel.closed)
        self.assertFalse(os.path.exists(self.local))

    def testFailedDownloadKeepsExistingFile(self):
        with open(self.local, "wb") as f:
            f.write(b"important user data")
        self.with_channel(
            MockChannel(responder=lambda p: [Error(1, "File not found.")])
        )
        with self.assertRaises(PeerError):
            self.client.download("remote", self.local)
        with open(self.local, "rb") as f:
            self.assertEqual(f.read(), b"important user data")
        self.assertEqual(os.listdir(self.tmpdir.name), ["local"])

    def testDownloadReplacesExistingFile(self):
        with open(self.local, "wb") as f:
            f.write(b"important user data")
        self.with_channel(MockChannel(responder=serving_peer([Data(1, b"new")])))
        self.client.download("remote", self.local)
        with open(self.local, "rb") as f:
            self.assertEqual(f.read(), b"new")
        self.assertEqual(os.listdir(self.tmpdir.name), ["local"])

    def testDownloadToMissingDirectory(self):
        with self.assertRaises(TftpError) as cm:
            self.client.download("remote", os.path.join(self.local, "x", "y"))
        self.assertEqual(cm.exception.error_code, constants.ERR_ACCESS_VIOLATION)

    def testUpload(self):
        with open(self.local, "wb") as f:
            f.write(b"c" * 700)
        channel = self.with_channel(MockChannel(responder=acking_peer))
        stats = self.client.upload(self.local, "remote")
        self.assertEqual(
            channel.sent,
            [write_request("remote"), Data(1, b"c" * 512), Data(2, b"c" * 188)],
        )
        self.assertEqual(stats.bytes_sent, 700)
        self.assertEqual(stats.direction, "write")

    def testUploadEmptyFile(self):
        open(self.local, "wb").close()
        channel = self.with_channel(MockChannel(responder=acking_peer))
        self.client.upload(self.local, "remote")
        self.assertEqual(channel.sent, [write_request("remote"), Data(1, b"")])

    def testUploadRejected(self):
        open(self.local, "wb").close()
        channel = self.with_channel(
            MockChannel(responder=lambda p: [Error(6, "File already exists.")])
        )
        with self.assertRaises(PeerError) as cm:
            self.client.upload(self.local, "remote")
        self.assertEqual(cm.exception.error_code, constants.ERR_FILE_EXISTS)
        self.assertEqual(channel.sent, [write_request("remote")])

    def testUploadMissingLocalFile(self):
        with patch.object(Client, "_open_channel") as open_channel:
            with self.assertRaises(TftpError) as cm:
                self.client.upload(self.local, "remote")
        self.assertEqual(cm.exception.error_code, constants.ERR_FILE_NOT_FOUND)
        open_channel.assert_not_called()

    def testCancel(self):
        def cancel_on_first_block(packet):
            self.client.cancel()
            return []

        channel = self.with_channel(MockChannel(responder=cancel_on_first_block))
        with self.assertRaises(TransferCancelled):
            self.client.download("remote", self.local)
        self.assertTrue(channel.interrupted)
        self.assertEqual(channel.sent, [read_request("remote")])
        self.assertFalse(os.path.exists(self.local))


if __name__ == "__main__":
    unittest.main()
