"""Encoding and decoding of bencoded data."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Union

__all__ = ["BencodeError", "decode", "encode"]

Bencodable = Union[int, bytes, str, list, tuple, Mapping]

_INTEGER = re.compile(rb"-?(?:0|[1-9][0-9]*)")

_INT_START = ord("i")
_LIST_START = ord("l")
_DICT_START = ord("d")
_END = ord("e")
_DIGITS = range(ord("0"), ord("9") + 1)


class BencodeError(ValueError):
    """Raised when data is not valid bencode."""


def decode(data: bytes | bytearray | memoryview) -> Any:
    """Decode one bencoded value that spans all of *data*.

    Byte strings come back as ``bytes``, dictionaries have ``bytes`` keys.
    """
    if isinstance(data, str):
        raise TypeError("bencoded data must be bytes, not str")
    buffer = bytes(data)
    value, end = _decode_at(buffer, 0)
    if end != len(buffer):
        raise BencodeError(f"trailing data at offset {end}")
    return value


def _decode_at(data: bytes, pos: int) -> tuple[Any, int]:
    if pos >= len(data):
        raise BencodeError("unexpected end of data")
    token = data[pos]

    if token == _INT_START:
        end = data.find(b"e", pos + 1)
        if end < 0:
            raise BencodeError(f"unterminated integer at offset {pos}")
        digits = data[pos + 1:end]
        if not _INTEGER.fullmatch(digits) or digits == b"-0":
            raise BencodeError(f"invalid integer {digits!r} at offset {pos}")
        return int(digits), end + 1

    if token == _LIST_START:
        items: list[Any] = []
        pos += 1
        while True:
            if pos >= len(data):
                raise BencodeError("unterminated list")
            if data[pos] == _END:
                return items, pos + 1
            item, pos = _decode_at(data, pos)
            items.append(item)

    if token == _DICT_START:
        result: dict[bytes, Any] = {}
        pos += 1
        while True:
            if pos >= len(data):
                raise BencodeError("unterminated dictionary")
            if data[pos] == _END:
                return result, pos + 1
            key, pos = _decode_at(data, pos)
            if not isinstance(key, bytes):
                raise BencodeError(f"dictionary key must be a string, got {type(key).__name__}")
            value, pos = _decode_at(data, pos)
            result[key] = value

    if token in _DIGITS:
        colon = data.find(b":", pos)
        if colon < 0:
            raise BencodeError(f"missing ':' in string at offset {pos}")
        digits = data[pos:colon]
        if not digits.isdigit():
            raise BencodeError(f"invalid string length {digits!r} at offset {pos}")
        start = colon + 1
        end = start + int(digits)
        if end > len(data):
            raise BencodeError(f"string at offset {pos} runs past end of data")
        return data[start:end], end

    raise BencodeError(f"unexpected byte {bytes([token])!r} at offset {pos}")


def encode(value: Bencodable) -> bytes:
    """Encode *value* as bencode; ``str`` is written as UTF-8, keys are sorted."""
    parts: list[bytes] = []
    _encode_into(value, parts)
    return b"".join(parts)


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"cannot use {type(value).__name__} as a bencode string")


def _encode_into(value: Any, parts: list[bytes]) -> None:
    if isinstance(value, bool):
        raise TypeError("cannot bencode a bool")
    if isinstance(value, int):
        parts.append(b"i%de" % value)
    elif isinstance(value, (str, bytes, bytearray, memoryview)):
        raw = _as_bytes(value)
        parts.append(b"%d:" % len(raw))
        parts.append(raw)
    elif isinstance(value, (list, tuple)):
        parts.append(b"l")
        for item in value:
            _encode_into(item, parts)
        parts.append(b"e")
    elif isinstance(value, Mapping):
        parts.append(b"d")
        for key, item in sorted((_as_bytes(k), v) for k, v in value.items()):
            parts.append(b"%d:" % len(key))
            parts.append(key)
            _encode_into(item, parts)
        parts.append(b"e")
    else:
        raise TypeError(f"cannot bencode {type(value).__name__}")