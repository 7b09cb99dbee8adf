"""The peer wire protocol: handshakes and length-prefixed messages."""

from __future__ import annotations

import enum
import logging
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .metainfo import Metainfo
from .peers import Peer, generate_peer_id, get_external_ip

__all__ = [
    "ProtocolError",
    "MessageID",
    "Message",
    "Handshake",
    "send_message",
    "receive_message",
    "has_piece",
    "split_piece_hashes",
    "request_payload",
    "perform_handshake",
    "PROTOCOL_NAME",
    "HANDSHAKE_SIZE",
    "MAX_MESSAGE_SIZE",
]

log = logging.getLogger(__name__)

PROTOCOL_NAME = b"BitTorrent protocol"
HANDSHAKE_SIZE = 1 + 19 + 8 + 20 + 20
MAX_MESSAGE_SIZE = 1 << 20

_HASH_SIZE = 20
_CONNECT_TIMEOUT = 5.0
_HANDSHAKE_TIMEOUT = 5.0
_MESSAGE_TIMEOUT = 60.0
_SEND_ATTEMPTS = 3
_RETRY_DELAY = 2.0


class ProtocolError(Exception):
    """Raised when a peer cannot be talked to or breaks the protocol."""


class MessageID(enum.IntEnum):
    """Message types of the peer wire protocol."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


@dataclass
class Message:
    """One peer wire message; unknown ids are kept as plain integers."""

    id: Union[MessageID, int]
    payload: bytes = b""

    def pack(self) -> bytes:
        """The message with its four-byte length prefix."""
        return struct.pack(">IB", len(self.payload) + 1, int(self.id)) + bytes(self.payload)


def _fixed(value: bytes, size: int) -> bytes:
    return bytes(value)[:size].ljust(size, b"\x00")


@dataclass
class Handshake:
    """The 68-byte message that opens a peer connection."""

    info_hash: bytes = bytes(_HASH_SIZE)
    peer_id: bytes = bytes(_HASH_SIZE)
    protocol: bytes = PROTOCOL_NAME
    reserved: bytes = bytes(8)
    name_length: int = field(default=len(PROTOCOL_NAME))

    def pack(self) -> bytes:
        """The handshake as it goes on the wire."""
        return (
            bytes([self.name_length & 0xFF])
            + _fixed(self.protocol, 19)
            + _fixed(self.reserved, 8)
            + _fixed(self.info_hash, _HASH_SIZE)
            + _fixed(self.peer_id, _HASH_SIZE)
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Handshake":
        """Read a handshake from exactly 68 bytes."""
        data = bytes(data)
        if len(data) != HANDSHAKE_SIZE:
            raise ProtocolError(f"handshake must be {HANDSHAKE_SIZE} bytes, got {len(data)}")
        return cls(
            name_length=data[0],
            protocol=data[1:20],
            reserved=data[20:28],
            info_hash=data[28:48],
            peer_id=data[48:68],
        )


def _recv_exact(conn: Any, size: int) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = conn.recv(size - len(buffer))
        if not chunk:
            raise ProtocolError(f"connection closed after {len(buffer)} of {size} bytes")
        buffer += chunk
    return bytes(buffer)


def send_message(peer: Peer, message: Message) -> None:
    """Send *message* to *peer*, trying up to three times."""
    if peer.connection is None:
        raise ProtocolError(f"no connection to peer {peer.address()}")
    packet = message.pack()
    for attempt in range(1, _SEND_ATTEMPTS + 1):
        try:
            peer.connection.settimeout(_MESSAGE_TIMEOUT)
            peer.connection.sendall(packet)
        except OSError as exc:
            log.warning(
                "Peer %s: attempt %d failed to send message ID = %d: %s",
                peer.address(), attempt, int(message.id), exc,
            )
            if attempt < _SEND_ATTEMPTS:
                time.sleep(_RETRY_DELAY)
            continue
        log.info(
            "Peer %s: sent message ID=%d, payload length=%d",
            peer.address(), int(message.id), len(message.payload),
        )
        return
    raise ProtocolError(
        f"failed to send message to {peer.address()} after {_SEND_ATTEMPTS} attempts"
    )


def receive_message(peer: Peer) -> Optional[Message]:
    """Read the next message from *peer*; a keep-alive gives ``None``."""
    if peer.connection is None:
        raise ProtocolError(f"no connection to peer {peer.address()}")
    try:
        peer.connection.settimeout(_MESSAGE_TIMEOUT)
        (length,) = struct.unpack(">I", _recv_exact(peer.connection, 4))
    except OSError as exc:
        raise ProtocolError(f"reading message length from {peer.address()}: {exc}") from exc
    except ProtocolError as exc:
        raise ProtocolError(f"reading message length from {peer.address()}: {exc}") from exc

    if length == 0:
        log.info("Peer %s: received keep-alive", peer.address())
        return None
    if length > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"message too large: {length} bytes from {peer.address()}")

    try:
        body = _recv_exact(peer.connection, length)
    except (OSError, ProtocolError) as exc:
        raise ProtocolError(f"reading message from {peer.address()}: {exc}") from exc

    try:
        message_id: Union[MessageID, int] = MessageID(body[0])
    except ValueError:
        message_id = body[0]
    message = Message(id=message_id, payload=body[1:])
    log.info(
        "Peer %s: received message ID=%d, payload length=%d",
        peer.address(), int(message.id), len(message.payload),
    )
    return message


def has_piece(bitfield: Optional[bytes], index: int) -> bool:
    """Whether the bit for piece *index* is set, high bit first."""
    if bitfield is None or index < 0:
        return False
    byte_index, bit_index = divmod(index, 8)
    if byte_index >= len(bitfield):
        return False
    return (bitfield[byte_index] >> (7 - bit_index)) & 1 == 1


def split_piece_hashes(pieces: bytes) -> list[bytes]:
    """Split the concatenated SHA-1 piece hashes into 20-byte digests."""
    pieces = bytes(pieces)
    if len(pieces) % _HASH_SIZE:
        raise ValueError(f"invalid pieces length: {len(pieces)}")
    return [pieces[i : i + _HASH_SIZE] for i in range(0, len(pieces), _HASH_SIZE)]


def request_payload(index: int, offset: int, length: int) -> bytes:
    """Payload of a Request message for one block."""
    return struct.pack(">III", index, offset, length)


def _exchange_handshake(conn: Any, info_hash: bytes, peer_id: str) -> str:
    """Send our handshake on *conn*, check the reply and return the remote peer id."""
    ours = Handshake(info_hash=info_hash, peer_id=peer_id.encode("latin-1"))
    try:
        conn.settimeout(_HANDSHAKE_TIMEOUT)
        conn.sendall(ours.pack())
    except OSError as exc:
        raise ProtocolError(f"sending handshake error: {exc}") from exc
    try:
        conn.settimeout(_HANDSHAKE_TIMEOUT)
        reply = Handshake.unpack(_recv_exact(conn, HANDSHAKE_SIZE))
    except OSError as exc:
        raise ProtocolError(f"reading handshake error: {exc}") from exc

    log.info(
        "Received handshake: ProtocolNameLength=%d, Protocol=%r, InfoHash=%s",
        reply.name_length, reply.protocol, reply.info_hash.hex(),
    )
    if reply.name_length != len(PROTOCOL_NAME) or reply.protocol != PROTOCOL_NAME:
        raise ProtocolError("invalid protocol in handshake")
    if reply.info_hash != bytes(info_hash):
        raise ProtocolError("info hash mismatch in handshake")
    return reply.peer_id.decode("latin-1")


def perform_handshake(metainfo: Metainfo, peer: Peer) -> Peer:
    """Connect to *peer* and handshake; return a new, connected and choked peer."""
    address = peer.address()
    try:
        my_ip = get_external_ip()
    except (OSError, ValueError) as exc:
        raise ProtocolError(str(exc)) from exc
    if peer.ip == my_ip:
        raise ProtocolError(f"skip handshake with self: {address}")

    try:
        conn = socket.create_connection((peer.ip, peer.port), timeout=_CONNECT_TIMEOUT)
    except OSError as exc:
        raise ProtocolError(f"connecting to peer failed: {exc}") from exc

    peer_id = generate_peer_id()
    log.info(
        "Sending handshake to %s: InfoHash=%s, PeerID=%s",
        address, metainfo.info.info_hash.hex(), peer_id,
    )
    try:
        remote_id = _exchange_handshake(conn, metainfo.info.info_hash, peer_id)
    except BaseException:
        conn.close()
        raise
    return Peer(
        ip=peer.ip,
        port=peer.port,
        peer_id=remote_id,
        connection=conn,
        choked=True,
        bitfield=None,
    )