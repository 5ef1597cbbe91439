#!/usr/bin/env python3
# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import os

from . import constants
from .exceptions import RequestRejected


class ResponseData:
    """A base class representing a file-like object"""

    def read(self, n):
        raise NotImplementedError()

    def size(self):
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()


class FileResponseData(ResponseData):
    def __init__(self, path):
        self._size = os.stat(path).st_size
        self._reader = open(path, "rb")

    def read(self, n):
        return self._reader.read(n)

    def size(self):
        return self._size

    def close(self):
        self._reader.close()


def is_readable(path):
    return os.path.isfile(path) and os.access(path, os.R_OK)


def is_writable(path):
    """
    An existing file must itself be writable, otherwise its directory must
    exist and be writable.
    """
    if os.path.exists(path):
        return os.path.isfile(path) and os.access(path, os.W_OK)
    parent = os.path.dirname(os.path.abspath(path))
    return os.path.isdir(parent) and os.access(parent, os.W_OK)


def resolve_path(root, filename):
    """
    Maps a requested file name onto the served directory tree.

    Raises:
        RequestRejected: the name points outside of `root`.
    """
    root = os.path.realpath(root)
    path = os.path.realpath(os.path.join(root, filename.lstrip("/")))
    if os.path.commonpath([root, path]) != root:
        raise RequestRejected(
            "Path %r is outside of the served directory" % filename,
            constants.ERR_ACCESS_VIOLATION,
        )
    return path
