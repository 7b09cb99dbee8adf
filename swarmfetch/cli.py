"""Command-line entry point: fetch a torrent's content into a directory."""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from typing import Optional

from .download import Download, DownloadError
from .metainfo import MetainfoError, load
from .tracker import TrackerError, find_peers

__all__ = ["main", "LOG_FILE", "USAGE"]

LOG_FILE = "torrent.log"
USAGE = "usage: swarmfetch <path-to-torrent-file> <output-path>"
_LOG_FORMAT = "%(asctime)s %(levelname)s\t%(message)s"

log = logging.getLogger(__name__)


def _run(torrent_path: str, output_dir: str) -> int:
    try:
        metainfo = load(torrent_path)
    except MetainfoError as exc:
        log.critical("%s", exc)
        return 1

    try:
        peers = find_peers(metainfo)
    except TrackerError as exc:
        log.critical("%s", exc)
        return 1

    try:
        download = Download(metainfo)
        download.connect_to_peers(peers)
        download.refresh_peers()
        download.start(output_dir)
    except DownloadError as exc:
        log.critical("%s", exc)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Download the torrent named on the command line; return the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)

    root = logging.getLogger()
    try:
        handler = logging.FileHandler(LOG_FILE, mode="a", encoding="utf-8")
    except OSError as exc:
        print(f"failed to open log file: {exc}", file=sys.stderr)
        return 1
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    previous_level = root.level
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    try:
        if len(args) < 2:
            print(USAGE, file=sys.stderr)
            return 1
        return _run(args[0], args[1])
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
        handler.close()


if __name__ == "__main__":
    sys.exit(main())