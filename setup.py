# Copyright (c) Facebook, Inc. and its affiliates.

# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from os import path

from setuptools import find_packages, setup


here = path.abspath(path.dirname(__file__))
with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="octftp",
    version="0.1",
    description="A python3 octet-mode TFTP client and server over UDP and TCP",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: System :: Networking",
        "Topic :: Utilities",
        "Intended Audience :: Developers",
    ],
    keywords="tftp rfc1350 file transfer stop-and-wait",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.6",
    extras_require={"test": ["pytest", "coverage"]},
    entry_points={
        "console_scripts": [
            "octftp-server=octftp.cli:server_main",
            "octftp-client=octftp.cli:client_main",
        ]
    },
)
