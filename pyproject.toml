[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "swarmfetch"
version = "0.1.0"
description = "A small BitTorrent client that downloads the contents of a .torrent file"
requires-python = ">=3.10"
dependencies = []
keywords = ["bittorrent", "torrent", "p2p", "tracker", "bencode", "download"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
swarmfetch = "swarmfetch.cli:main"

[tool.setuptools.packages.find]
include = ["swarmfetch*"]

[tool.pytest.ini_options]
addopts = "-ra"
