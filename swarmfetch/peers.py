"""Peers, local file layout and small helpers shared by tracker and wire code."""

from __future__ import annotations

import json
import os
import re
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional
from urllib import request
from urllib.error import URLError

from .metainfo import Metainfo

__all__ = [
    "Peer",
    "FileInfo",
    "parse_peers",
    "encode_peers",
    "generate_peer_id",
    "generate_transaction_id",
    "is_http",
    "is_udp",
    "build_file_info",
    "get_external_ip",
    "PEER_ID_PREFIX",
    "PEER_ID_LENGTH",
    "IP_ECHO_URL",
]

PEER_ID_PREFIX = "-GT0001-"
PEER_ID_LENGTH = 20
_PEER_ID_CHARS = "0123456789abcdefghijklmnopqrstuvxyz"

IP_ECHO_URL = "http://httpbin.org/ip"

_COMPACT_PEER_SIZE = 6
_SIGNED_DECIMAL = re.compile(r"[+-]?[0-9]+", re.ASCII)
_UNSIGNED_DECIMAL = re.compile(r"[0-9]+", re.ASCII)


@dataclass(eq=False)
class Peer:
    """A remote peer in the swarm and the state of our connection to it."""

    ip: str
    port: int
    peer_id: str = ""
    connection: Optional[Any] = None
    choked: bool = True
    bitfield: Optional[bytes] = None

    def address(self) -> str:
        """The peer's ``ip:port`` address."""
        return f"{self.ip}:{self.port}"


@dataclass
class FileInfo:
    """Where one file of the torrent lives on disk and in the torrent's data."""

    path: Path
    length: int
    offset: int
    handle: Optional[IO[bytes]] = None


def parse_peers(data: bytes | str) -> list[Peer]:
    """Split a compact peer list (4 bytes IPv4, 2 bytes port each) into peers."""
    if isinstance(data, str):
        data = data.encode("latin-1")
    raw = bytes(data)
    if len(raw) % _COMPACT_PEER_SIZE:
        raise ValueError(f"invalid peers length: {len(raw)} (must be multiple of 6)")
    return [
        Peer(
            ip=".".join(str(b) for b in raw[i : i + 4]),
            port=int.from_bytes(raw[i + 4 : i + 6], "big"),
            choked=False,
        )
        for i in range(0, len(raw), _COMPACT_PEER_SIZE)
    ]


def _loose_int(text: str) -> int:
    """Decimal value of *text*, or 0 when it is not a number."""
    return int(text) if _SIGNED_DECIMAL.fullmatch(text) else 0


def _compact_entry(address: str) -> Optional[bytes]:
    parts = address.split(":")
    if len(parts) != 2:
        return None
    host, port_text = parts
    octets = host.split(".")
    if len(octets) != 4:
        return None
    if not _UNSIGNED_DECIMAL.fullmatch(port_text):
        return None
    port = int(port_text)
    if port > 0xFFFF:
        return None
    return bytes(_loose_int(octet) & 0xFF for octet in octets) + port.to_bytes(2, "big")


def encode_peers(addresses: Iterable[str]) -> bytes:
    """Pack ``ip:port`` strings into a compact peer list, skipping malformed ones."""
    return b"".join(
        entry for entry in map(_compact_entry, addresses) if entry is not None
    )


def generate_peer_id() -> str:
    """A fresh 20-character peer id starting with the client prefix."""
    count = PEER_ID_LENGTH - len(PEER_ID_PREFIX)
    tail = "".join(
        _PEER_ID_CHARS[b % len(_PEER_ID_CHARS)] for b in secrets.token_bytes(count)
    )
    return PEER_ID_PREFIX + tail


def generate_transaction_id() -> int:
    """A random unsigned 32-bit transaction id for tracker requests."""
    return int.from_bytes(secrets.token_bytes(4), "big")


def is_http(url: str) -> bool:
    """Whether *url* is an HTTP or HTTPS tracker address."""
    return url.startswith(("http://", "https://"))


def is_udp(url: str) -> bool:
    """Whether *url* is a UDP tracker address."""
    return url.startswith("udp://")


def _join(*parts: str | os.PathLike[str]) -> Path:
    # Every component stays below the first one, as with a plain string join.
    pieces = [os.fspath(parts[0])]
    pieces.extend(os.fspath(p).lstrip("/\\") for p in parts[1:])
    pieces = [p for p in pieces if p]
    return Path(os.path.normpath(os.path.join(*pieces))) if pieces else Path()


def build_file_info(metainfo: Metainfo, output_dir: str | os.PathLike[str]) -> list[FileInfo]:
    """Lay out the torrent's files under *output_dir* with their data offsets."""
    info = metainfo.info
    if not info.files:
        return [FileInfo(path=_join(output_dir, info.name), length=info.length, offset=0)]

    files: list[FileInfo] = []
    offset = 0
    for entry in info.files:
        files.append(
            FileInfo(
                path=_join(output_dir, info.name, *entry.path),
                length=entry.length,
                offset=offset,
            )
        )
        offset += entry.length
    return files


def get_external_ip() -> str:
    """Ask a public echo service for this host's external IP address."""
    try:
        with request.urlopen(IP_ECHO_URL, timeout=15) as response:
            body = response.read()
    except (URLError, OSError) as exc:
        raise OSError(f"failed to get external IP: {exc}") from exc
    try:
        result = json.loads(body)
    except ValueError as exc:
        raise ValueError(f"failed to parse JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise ValueError("failed to parse JSON: expected an object")
    origin = result.get("origin", "")
    return origin if isinstance(origin, str) else ""