"""Reading .torrent metainfo files."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Any, Union

from .bencode import BencodeError, decode

__all__ = [
    "MetainfoError",
    "FileEntry",
    "InfoDict",
    "Metainfo",
    "extract_info_bytes",
    "compute_info_hash",
    "parse_metainfo",
    "load",
]

log = logging.getLogger(__name__)

PathArg = Union[str, "PathLike[str]"]

_INFO_PREFIX = b"4:info"


class MetainfoError(ValueError):
    """Raised when a torrent file cannot be read or understood."""


@dataclass
class FileEntry:
    """One file of a multi-file torrent."""

    length: int = 0
    path: list[str] = field(default_factory=list)
    md5sum: str = ""
    pieces_root: bytes = b""
    custom: dict[str, Any] = field(default_factory=dict)


@dataclass
class InfoDict:
    """The ``info`` dictionary of a torrent."""

    piece_length: int = 0
    pieces: bytes = b""
    name: str = ""
    length: int = 0
    files: list[FileEntry] = field(default_factory=list)
    md5sum: str = ""
    private: int = 0
    source: str = ""
    meta_version: int = 0
    file_tree: dict[bytes, Any] = field(default_factory=dict)
    piece_layers: dict[bytes, bytes] = field(default_factory=dict)
    pieces_root: bytes = b""
    custom: dict[str, Any] = field(default_factory=dict)
    info_hash: bytes = bytes(20)


@dataclass
class Metainfo:
    """A parsed .torrent file."""

    announce: str = ""
    announce_list: list[list[str]] = field(default_factory=list)
    comment: str = ""
    created_by: str = ""
    creation_date: int = 0
    encoding: str = ""
    info: InfoDict = field(default_factory=InfoDict)
    nodes: list[Any] = field(default_factory=list)
    url_list: list[str] = field(default_factory=list)
    http_seeds: list[str] = field(default_factory=list)
    publisher: str = ""
    publisher_url: str = ""
    source: str = ""
    signature: str = ""
    custom: dict[str, Any] = field(default_factory=dict)

    def total_size(self) -> int:
        """Total content size: the single file's length or the sum of all files."""
        if not self.info.files:
            return self.info.length
        return sum(entry.length for entry in self.info.files)

    def trackers(self) -> list[str]:
        """The torrent's own tracker URLs, without blanks or repeats, in file order."""
        urls = [self.announce, *(url for tier in self.announce_list for url in tier)]
        return list(dict.fromkeys(url for url in urls if url))


def extract_info_bytes(data: bytes) -> bytes:
    """Return the raw bencoded ``info`` dictionary found in *data*."""
    data = bytes(data)
    idx = data.find(_INFO_PREFIX)
    if idx < 0:
        raise MetainfoError('no "4:info" prefix found')
    start = idx + len(_INFO_PREFIX)

    depth = 0
    i = start
    while i < len(data):
        byte = data[i : i + 1]
        if byte in (b"d", b"l"):
            depth += 1
        elif byte == b"e":
            depth -= 1
            if depth == 0:
                return data[start : i + 1]
        elif byte == b"i":
            end = data.find(b"e", i + 1)
            if end < 0:
                raise MetainfoError(f"unterminated integer at {i}")
            i = end
        elif byte.isdigit():
            j = i
            while j < len(data) and data[j : j + 1].isdigit():
                j += 1
            if j < len(data) and data[j : j + 1] == b":":
                i = j + int(data[i:j])
        i += 1
    raise MetainfoError("unterminated info dict")


def compute_info_hash(path: PathArg) -> bytes:
    """SHA-1 of the ``info`` dictionary of the torrent file at *path*."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise MetainfoError(f"cannot read {str(path)!r}: {exc}") from exc
    return hashlib.sha1(extract_info_bytes(data)).digest()


def _check(value: Any, kind: type | tuple[type, ...], name: str) -> Any:
    if isinstance(value, bool) or not isinstance(value, kind):
        raise MetainfoError(f"field {name!r} has the wrong type")
    return value


def _int(d: dict[bytes, Any], key: bytes) -> int:
    return _check(d.get(key, 0), int, key.decode())


def _raw(d: dict[bytes, Any], key: bytes) -> bytes:
    return _check(d.get(key, b""), bytes, key.decode())


def _text(d: dict[bytes, Any], key: bytes) -> str:
    return _raw(d, key).decode("utf-8", errors="replace")


def _list(d: dict[bytes, Any], key: bytes) -> list[Any]:
    return _check(d.get(key, []), list, key.decode())


def _dict(d: dict[bytes, Any], key: bytes) -> dict[bytes, Any]:
    return _check(d.get(key, {}), dict, key.decode())


def _texts(values: list[Any], name: str) -> list[str]:
    return [_check(v, bytes, name).decode("utf-8", errors="replace") for v in values]


def _text_or_list(d: dict[bytes, Any], key: bytes) -> list[str]:
    value = d.get(key, [])
    if isinstance(value, bytes):
        value = [value]
    return _texts(_check(value, list, key.decode()), key.decode())


def _custom(d: dict[bytes, Any], known: frozenset[bytes]) -> dict[str, Any]:
    return {k.decode("utf-8", errors="replace"): v for k, v in d.items() if k not in known}


_FILE_KEYS = frozenset({b"length", b"path", b"md5sum", b"pieces root"})

_INFO_KEYS = frozenset(
    {
        b"piece length", b"pieces", b"name", b"length", b"files", b"md5sum",
        b"private", b"source", b"meta version", b"file tree", b"piece layers",
        b"pieces root",
    }
)

_TOP_KEYS = frozenset(
    {
        b"announce", b"announce-list", b"comment", b"created by", b"creation date",
        b"encoding", b"info", b"nodes", b"url-list", b"httpseeds", b"publisher",
        b"publisher-url", b"source", b"signature",
    }
)


def _file_entry(d: Any) -> FileEntry:
    d = _check(d, dict, "files")
    return FileEntry(
        length=_int(d, b"length"),
        path=_texts(_list(d, b"path"), "path"),
        md5sum=_text(d, b"md5sum"),
        pieces_root=_raw(d, b"pieces root"),
        custom=_custom(d, _FILE_KEYS),
    )


def _info_dict(d: dict[bytes, Any]) -> InfoDict:
    layers = _dict(d, b"piece layers")
    return InfoDict(
        piece_length=_int(d, b"piece length"),
        pieces=_raw(d, b"pieces"),
        name=_text(d, b"name"),
        length=_int(d, b"length"),
        files=[_file_entry(entry) for entry in _list(d, b"files")],
        md5sum=_text(d, b"md5sum"),
        private=_int(d, b"private"),
        source=_text(d, b"source"),
        meta_version=_int(d, b"meta version"),
        file_tree=_dict(d, b"file tree"),
        piece_layers={k: _check(v, bytes, "piece layers") for k, v in layers.items()},
        pieces_root=_raw(d, b"pieces root"),
        custom=_custom(d, _INFO_KEYS),
    )


def parse_metainfo(data: bytes) -> Metainfo:
    """Parse the bytes of a .torrent file and compute its info hash."""
    try:
        root = decode(data)
    except BencodeError as exc:
        raise MetainfoError(f"decoding error: {exc}") from exc
    if not isinstance(root, dict):
        raise MetainfoError("torrent file is not a dictionary")

    meta = Metainfo(
        announce=_text(root, b"announce"),
        announce_list=[
            _texts(_check(tier, list, "announce-list"), "announce-list")
            for tier in _list(root, b"announce-list")
        ],
        comment=_text(root, b"comment"),
        created_by=_text(root, b"created by"),
        creation_date=_int(root, b"creation date"),
        encoding=_text(root, b"encoding"),
        info=_info_dict(_dict(root, b"info")),
        nodes=[_check(node, list, "nodes") for node in _list(root, b"nodes")],
        url_list=_text_or_list(root, b"url-list"),
        http_seeds=_text_or_list(root, b"httpseeds"),
        publisher=_text(root, b"publisher"),
        publisher_url=_text(root, b"publisher-url"),
        source=_text(root, b"source"),
        signature=_text(root, b"signature"),
        custom=_custom(root, _TOP_KEYS),
    )

    # A missing or malformed info dictionary leaves the all-zero hash in place.
    try:
        meta.info.info_hash = hashlib.sha1(extract_info_bytes(data)).digest()
    except MetainfoError as exc:
        log.warning("could not compute info hash: %s", exc)

    log.info("Parsed torrent: %s, InfoHash: %s", meta.info.name, meta.info.info_hash.hex())
    return meta


def load(path: PathArg) -> Metainfo:
    """Read and parse the .torrent file at *path*."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise MetainfoError(f"opening file error: {exc}") from exc
    return parse_metainfo(data)