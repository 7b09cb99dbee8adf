"""Talking to HTTP and UDP trackers to find peers for a torrent."""

from __future__ import annotations

import logging
import random
import socket
import struct
from dataclasses import dataclass
from urllib import request
from urllib.error import HTTPError, URLError
from urllib.parse import quote_plus, urlencode, urlsplit, urlunsplit

from .bencode import BencodeError, decode
from .metainfo import Metainfo
from .peers import (
    Peer,
    encode_peers,
    generate_peer_id,
    generate_transaction_id,
    is_http,
    is_udp,
    parse_peers,
)

__all__ = [
    "TrackerError",
    "TrackerResponse",
    "create_announce_request",
    "build_http_announce_url",
    "parse_http_response",
    "parse_udp_announce_response",
    "send_http_tracker_request",
    "send_udp_tracker_request",
    "collect_trackers",
    "announce",
    "find_peers",
    "PUBLIC_TRACKERS",
    "PROTOCOL_ID",
    "LISTEN_PORT",
    "USER_AGENT",
]

log = logging.getLogger(__name__)

PUBLIC_TRACKERS = (
    "udp://tracker.opentrackr.org:1337/announce",
    "udp://tracker.torrent.eu.org:451/announce",
    "udp://open.tracker.cl:1337/announce",
    "udp://open.stealth.si:80/announce",
    "udp://tracker.tiny-vps.com:6969/announce",
)

PROTOCOL_ID = 0x41727101980
LISTEN_PORT = 6881
USER_AGENT = "BitTorrent/1.0"
HTTP_TIMEOUT = 15.0

ACTION_CONNECT = 0
ACTION_ANNOUNCE = 1
ACTION_ERROR = 3
EVENT_STARTED = 2

_ANNOUNCE_REQUEST_SIZE = 98
_CONNECT_ATTEMPTS = 3
_UDP_RESPONSE_SIZE = 1024


class TrackerError(Exception):
    """Raised when a tracker cannot be reached or answers with an error."""


@dataclass
class TrackerResponse:
    """Peers (compact form) and re-announce interval returned by a tracker."""

    peers: bytes = b""
    interval: int = 0
    failure: str = ""


def create_announce_request(
    connection_id: int,
    action: int,
    transaction_id: int,
    info_hash: bytes,
    peer_id: str | bytes,
    downloaded: int,
    left: int,
    uploaded: int,
    event: int,
    ip: int,
    key: int,
    num_want: int,
    port: int,
) -> bytes:
    """Build the 98-byte UDP announce packet.

    The IP field is always sent as zero, which lets the tracker use the
    sender's address; *ip* is accepted for the sake of the packet layout only.
    """
    if isinstance(peer_id, str):
        peer_id = peer_id.encode("latin-1")
    packet = bytearray(_ANNOUNCE_REQUEST_SIZE)
    struct.pack_into(">QII", packet, 0, connection_id, action, transaction_id)
    hash_bytes = bytes(info_hash)[:20]
    packet[16 : 16 + len(hash_bytes)] = hash_bytes
    id_bytes = bytes(peer_id)[:20]
    packet[36 : 36 + len(id_bytes)] = id_bytes
    struct.pack_into(">QQQI", packet, 56, downloaded, left, uploaded, event)
    struct.pack_into(">IiH", packet, 88, key, num_want, port)
    return bytes(packet)


def build_http_announce_url(metainfo: Metainfo, announce_url: str, peer_id: str) -> str:
    """The full GET URL for an HTTP announce; any query already on *announce_url* is replaced."""
    try:
        parts = urlsplit(announce_url)
    except ValueError as exc:
        raise TrackerError(f"URL parsing error: {exc}") from exc
    params = {
        "info_hash": quote_plus(metainfo.info.info_hash),
        "peer_id": peer_id,
        "port": str(LISTEN_PORT),
        "uploaded": "0",
        "downloaded": "0",
        "left": str(metainfo.total_size()),
        "compact": "1",
        "event": "started",
    }
    query = urlencode(sorted(params.items()))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def parse_http_response(body: bytes) -> TrackerResponse:
    """Decode a bencoded HTTP tracker reply."""
    try:
        root = decode(body)
    except BencodeError as exc:
        raise TrackerError(f"decoding tracker response error: {exc}") from exc
    if not isinstance(root, dict):
        raise TrackerError("decoding tracker response error: not a dictionary")

    failure = root.get(b"failure reason", b"")
    if isinstance(failure, bytes) and failure:
        reason = failure.decode("utf-8", errors="replace")
        raise TrackerError(f"tracker failure: {reason}")

    peers = root.get(b"peers", b"")
    if not isinstance(peers, bytes):
        raise TrackerError("decoding tracker response error: peers is not a string")
    interval = root.get(b"interval", 0)
    if isinstance(interval, bool) or not isinstance(interval, int):
        raise TrackerError("decoding tracker response error: interval is not an integer")
    return TrackerResponse(peers=peers, interval=interval)


def parse_udp_announce_response(data: bytes, transaction_id: int) -> TrackerResponse:
    """Check and decode a UDP announce reply for *transaction_id*."""
    data = bytes(data)
    if len(data) < 20:
        raise TrackerError(f"invalid announce response length: {len(data)}")
    log.info("Raw announce response: %s", data.hex())

    action, received_id = struct.unpack_from(">II", data, 0)
    if action == ACTION_ERROR:
        message = data[8:].decode("utf-8", errors="replace")
        raise TrackerError(f"tracker error: {message}")
    if action != ACTION_ANNOUNCE:
        raise TrackerError(f"invalid announce action: {action}")
    if received_id != transaction_id:
        raise TrackerError("transaction ID mismatch")

    interval, leechers, seeders = struct.unpack_from(">III", data, 8)
    peers = data[20:]
    if len(peers) % 6:
        raise TrackerError(f"invalid peers length: {len(peers)} (must be multiple of 6)")
    log.info(
        "Received %d peers, leechers: %d, seeders: %d", len(peers) // 6, leechers, seeders
    )
    return TrackerResponse(peers=peers, interval=interval)


def send_http_tracker_request(metainfo: Metainfo, announce_url: str) -> TrackerResponse:
    """Announce to an HTTP tracker and return its reply."""
    url = build_http_announce_url(metainfo, announce_url, generate_peer_id())
    req = request.Request(url, headers={"User-Agent": USER_AGENT}, method="GET")
    log.info("Sending HTTP request to %s", url)
    try:
        with request.urlopen(req, timeout=HTTP_TIMEOUT) as response:
            status = response.status
            body = response.read()
    except HTTPError as exc:
        raise TrackerError(f"tracker status code error: {exc.code}") from exc
    except (URLError, OSError, ValueError) as exc:
        raise TrackerError(f"sending request error: {exc}") from exc
    if status != 200:
        raise TrackerError(f"tracker status code error: {status}")
    return parse_http_response(body)


def _udp_address(announce_url: str) -> tuple:
    try:
        parts = urlsplit(announce_url)
        host, port = parts.hostname, parts.port
    except ValueError as exc:
        raise TrackerError(f"parsing UDP URL error: {exc}") from exc
    if not host or port is None:
        raise TrackerError(f"resolving UDP address error: missing host or port in {announce_url!r}")
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except OSError as exc:
        raise TrackerError(f"resolving UDP address error: {exc}") from exc
    if not infos:
        raise TrackerError(f"resolving UDP address error: no address for {host!r}")
    return infos[0]


def _udp_connect(sock: socket.socket, transaction_id: int) -> int:
    """Run the connect exchange and return the tracker's connection id."""
    connect_request = struct.pack(">QII", PROTOCOL_ID, ACTION_CONNECT, transaction_id)
    for attempt in range(_CONNECT_ATTEMPTS):
        sock.settimeout(5 + attempt * 2)
        try:
            sock.send(connect_request)
        except OSError as exc:
            log.warning("Attempt %d failed to send connect: %s", attempt + 1, exc)
            continue
        try:
            reply = sock.recv(16)
        except OSError as exc:
            log.warning("Attempt %d failed to read connect response: %s", attempt + 1, exc)
            continue
        if len(reply) < 16:
            log.error("Attempt %d invalid connect response length: %d", attempt + 1, len(reply))
            continue

        action, received_id, connection_id = struct.unpack(">IIQ", reply)
        if action != ACTION_CONNECT:
            raise TrackerError(f"invalid connect action: {action}")
        if received_id != transaction_id:
            raise TrackerError("transaction ID mismatch")
        return connection_id
    raise TrackerError(f"no connect response after {_CONNECT_ATTEMPTS} attempts")


def send_udp_tracker_request(metainfo: Metainfo, announce_url: str) -> TrackerResponse:
    """Connect to a UDP tracker, announce, and return its reply."""
    family, kind, proto, _, address = _udp_address(announce_url)
    with socket.socket(family, kind, proto) as sock:
        try:
            sock.connect(address)
        except OSError as exc:
            raise TrackerError(f"dial UDP error: {exc}") from exc

        transaction_id = generate_transaction_id()
        log.info("Sending Connect to %s, transaction_id: %d", address, transaction_id)
        connection_id = _udp_connect(sock, transaction_id)

        info_hash = metainfo.info.info_hash
        peer_id = generate_peer_id()
        left = metainfo.total_size()
        packet = create_announce_request(
            connection_id,
            ACTION_ANNOUNCE,
            transaction_id,
            info_hash,
            peer_id,
            0,
            left,
            0,
            EVENT_STARTED,
            0,
            random.getrandbits(32),
            -1,
            LISTEN_PORT,
        )
        log.info(
            "Sending Announce to %s: info_hash = %s, peer_id = %s, left = %d",
            address, info_hash.hex(), peer_id, left,
        )
        sock.settimeout(5)
        try:
            sock.send(packet)
        except OSError as exc:
            raise TrackerError(f"sending announce request error: {exc}") from exc
        try:
            reply = sock.recv(_UDP_RESPONSE_SIZE)
        except OSError as exc:
            raise TrackerError(f"reading announce response error: {exc}") from exc
    return parse_udp_announce_response(reply, transaction_id)


def collect_trackers(metainfo: Metainfo) -> list[str]:
    """The torrent's trackers followed by the well-known public ones, without repeats."""
    return list(dict.fromkeys([*metainfo.trackers(), *PUBLIC_TRACKERS]))


def announce(metainfo: Metainfo) -> TrackerResponse:
    """Ask every tracker for peers and merge the answers.

    The merged reply holds each peer once and the shortest interval any
    tracker gave.
    """
    trackers = collect_trackers(metainfo)
    if not trackers:
        raise TrackerError("no trackers found")

    udp_trackers = [url for url in trackers if is_udp(url)]
    http_trackers = [url for url in trackers if not is_udp(url) and is_http(url)]
    log.info("Found %d unique trackers: %s", len(trackers), trackers)
    log.info("UDP trackers: %s", udp_trackers)
    log.info("HTTP trackers: %s", http_trackers)

    addresses: dict[str, None] = {}
    final_interval = 0
    attempts = [(url, "UDP", send_udp_tracker_request) for url in udp_trackers]
    attempts += [(url, "HTTP", send_http_tracker_request) for url in http_trackers]

    for url, kind, send in attempts:
        log.info("Trying tracker: %s", url)
        try:
            response = send(metainfo, url)
        except TrackerError as exc:
            log.warning("%s tracker %s failed: %s", kind, url, exc)
            continue
        log.info(
            "Success from %s tracker %s: %d peers, interval: %d",
            kind, url, len(response.peers) // 6, response.interval,
        )
        try:
            peers = parse_peers(response.peers)
        except ValueError as exc:
            log.warning("Failed to parse peers from %s: %s", url, exc)
            continue
        for peer in peers:
            addresses[peer.address()] = None
        if final_interval == 0 or response.interval < final_interval:
            final_interval = response.interval

    if not addresses:
        raise TrackerError("no peers received from any tracker")
    return TrackerResponse(peers=encode_peers(addresses), interval=final_interval)


def find_peers(metainfo: Metainfo) -> list[Peer]:
    """Contact the trackers and return the peers they know of."""
    response = announce(metainfo)
    try:
        return parse_peers(response.peers)
    except ValueError as exc:
        raise TrackerError(str(exc)) from exc