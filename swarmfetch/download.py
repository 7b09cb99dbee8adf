"""Downloading pieces from connected peers and writing them to disk."""

from __future__ import annotations

import hashlib
import logging
import os
import queue
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Optional

from .metainfo import Metainfo
from .peers import FileInfo, Peer, build_file_info, parse_peers
from .tracker import TrackerError, announce
from .wire import (
    Message,
    MessageID,
    ProtocolError,
    has_piece,
    perform_handshake,
    receive_message,
    request_payload,
    send_message,
    split_piece_hashes,
)

__all__ = [
    "DownloadError",
    "PieceResult",
    "SpeedMeter",
    "Download",
    "piece_size",
    "render_progress",
    "BLOCK_SIZE",
    "MAX_WORKERS",
    "BAR_WIDTH",
    "SPEED_WINDOW",
]

log = logging.getLogger(__name__)

BLOCK_SIZE = 1 << 14
MAX_WORKERS = 10
BAR_WIDTH = 50
SPEED_WINDOW = 5.0

_MIB = 1024 * 1024
_INTERESTED_ATTEMPTS = 3
_REFRESH_RETRY = 60.0
_DONE = object()


class DownloadError(Exception):
    """Raised when a download cannot be set up or does not finish."""


@dataclass
class PieceResult:
    """A verified piece and its index."""

    index: int
    data: bytes


def piece_size(index: int, num_pieces: int, piece_length: int, total_length: int) -> int:
    """Length of piece *index*; only the last piece may be shorter."""
    if piece_length <= 0:
        raise ValueError(f"invalid piece length: {piece_length}")
    if index == num_pieces - 1:
        remainder = total_length % piece_length
        return remainder or piece_length
    return piece_length


def render_progress(
    name: str, completed: int, total: int, speed: float, width: int = BAR_WIDTH
) -> str:
    """One line of download progress: name, bar, percentage and speed."""
    progress = completed / total if total > 0 else 1.0
    filled = int(progress * width)
    bar = "»" * filled + "-" * (width - filled)
    return f"[{name}]\t[{bar}] ({progress * 100.0:.2f}/100%) [{speed:.2f} MB/s]"


class SpeedMeter:
    """Download speed over a sliding time window, in MiB per second."""

    def __init__(self, window: float = SPEED_WINDOW) -> None:
        self.window = window
        self._samples: deque[tuple[float, int]] = deque()

    def add(self, size: int, now: Optional[float] = None) -> None:
        """Record *size* bytes arriving at time *now* (seconds)."""
        if now is None:
            now = time.monotonic()
        self._samples.append((now, size))
        cutoff = now - self.window
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def rate(self) -> float:
        """Bytes in the window divided by the time the samples span."""
        total = sum(size for _, size in self._samples)
        seconds = self.window
        if len(self._samples) > 1:
            seconds = self._samples[-1][0] - self._samples[0][0]
        return total / seconds / _MIB if seconds > 0 else 0.0


class Download:
    """Download state of one torrent: peers, claimed pieces and output files."""

    def __init__(self, metainfo: Metainfo, retry_delay: float = 2.0) -> None:
        self.metainfo = metainfo
        self.retry_delay = retry_delay
        self.peers: list[Peer] = []
        self.files: list[FileInfo] = []
        self.completed: set[int] = set()
        self._peers_lock = threading.Lock()
        self._lock = threading.Lock()
        self._initialize_pieces()

    @property
    def num_pieces(self) -> int:
        return len(self.piece_hashes)

    def _initialize_pieces(self) -> None:
        try:
            hashes = split_piece_hashes(self.metainfo.info.pieces)
        except ValueError as exc:
            raise DownloadError(f"failed to initialize pieces: {exc}") from exc
        if hashes and self.metainfo.info.piece_length <= 0:
            raise DownloadError(
                f"failed to initialize pieces: invalid piece length "
                f"{self.metainfo.info.piece_length}"
            )
        self.piece_length = self.metainfo.info.piece_length
        self.piece_hashes = hashes
        self.downloaded = [False] * len(hashes)

    def connect_to_peers(self, peers: list[Peer]) -> list[Peer]:
        """Handshake with *peers* concurrently and keep the ones that answer."""

        def attempt(peer: Peer) -> Optional[Peer]:
            try:
                connected = perform_handshake(self.metainfo, peer)
            except ProtocolError as exc:
                log.info("Peer %s: handshake failed: %s", peer.address(), exc)
                return None
            with self._peers_lock:
                self.peers.append(connected)
            log.info(
                "Peer %s handshake successful, remotePeerID: %s",
                peer.address(), connected.peer_id,
            )
            return connected

        with ThreadPoolExecutor(max_workers=MAX_WORKERS) as executor:
            outcomes = list(executor.map(attempt, peers))
        with self._peers_lock:
            log.info("Connected to %d peers", len(self.peers))
        return [peer for peer in outcomes if peer is not None]

    def claim_piece(self, bitfield: Optional[bytes]) -> Optional[int]:
        """Reserve the first missing piece that *bitfield* offers, if any."""
        with self._lock:
            for index, done in enumerate(self.downloaded):
                if not done and has_piece(bitfield, index):
                    self.downloaded[index] = True
                    return index
        return None

    def release_piece(self, index: int) -> None:
        """Make piece *index* available to be claimed again."""
        with self._lock:
            self.downloaded[index] = False

    def _send_interested(self, peer: Peer) -> bool:
        for attempt in range(1, _INTERESTED_ATTEMPTS + 1):
            try:
                send_message(peer, Message(MessageID.INTERESTED))
                return True
            except ProtocolError as exc:
                log.warning(
                    "Peer %s: attempt %d failed to send Interested: %s",
                    peer.address(), attempt, exc,
                )
            if attempt < _INTERESTED_ATTEMPTS:
                time.sleep(self.retry_delay)
        return False

    def _await_ready(self, peer: Peer) -> bool:
        """Read messages until the peer has unchoked us and sent its bitfield."""
        while True:
            try:
                message = receive_message(peer)
            except ProtocolError as exc:
                log.warning("Peer %s: failed to receive message: %s", peer.address(), exc)
                return False
            if message is None:
                continue
            if message.id == MessageID.BITFIELD:
                peer.bitfield = message.payload
                log.info(
                    "Peer %s: received Bitfield (length=%d)",
                    peer.address(), len(peer.bitfield),
                )
            elif message.id == MessageID.UNCHOKE:
                peer.choked = False
                log.info("Peer %s: unchoked", peer.address())
            elif message.id == MessageID.CHOKE:
                peer.choked = True
                log.info("Peer %s: choked", peer.address())
            if not peer.choked and peer.bitfield is not None:
                log.info("Peer %s: ready to download pieces", peer.address())
                return True

    def _await_unchoke(self, peer: Peer) -> bool:
        log.info("Peer %s: choked, waiting for Unchoke", peer.address())
        while True:
            try:
                message = receive_message(peer)
            except ProtocolError as exc:
                log.warning(
                    "Peer %s: failed to receive message while choked: %s",
                    peer.address(), exc,
                )
                return False
            if message is None:
                continue
            if message.id == MessageID.UNCHOKE:
                peer.choked = False
                log.info("Peer %s: unchoked", peer.address())
                return True
            if message.id == MessageID.CHOKE:
                peer.choked = True

    def _fetch_piece(self, peer: Peer, index: int) -> Optional[bytes]:
        """Request every block of piece *index*; ``None`` if the peer fails."""
        length = piece_size(
            index, self.num_pieces, self.piece_length, self.metainfo.total_size()
        )
        data = bytearray()
        for offset in range(0, length, BLOCK_SIZE):
            block = min(BLOCK_SIZE, length - offset)
            request = Message(MessageID.REQUEST, request_payload(index, offset, block))
            try:
                send_message(peer, request)
            except ProtocolError as exc:
                log.warning(
                    "Peer %s: failed to send Request for piece %d, offset %d: %s",
                    peer.address(), index, offset, exc,
                )
                self.release_piece(index)
                return None

            while True:
                try:
                    message = receive_message(peer)
                except ProtocolError as exc:
                    log.warning(
                        "Peer %s: failed to receive Piece for piece %d, offset %d: %s",
                        peer.address(), index, offset, exc,
                    )
                    self.release_piece(index)
                    return None
                if message is None:
                    continue
                if message.id == MessageID.PIECE:
                    if len(message.payload) < 8:
                        log.error(
                            "Peer %s: invalid Piece payload length %d for piece %d, offset %d",
                            peer.address(), len(message.payload), index, offset,
                        )
                        self.release_piece(index)
                        return None
                    data += message.payload[8:]
                    break
                if message.id == MessageID.CHOKE:
                    peer.choked = True
                    log.error(
                        "Peer %s: choked during piece %d, offset %d",
                        peer.address(), index, offset,
                    )
                    self.release_piece(index)
                    continue
                log.error(
                    "Peer %s: unexpected message ID %d for piece %d, offset %d",
                    peer.address(), int(message.id), index, offset,
                )
        return bytes(data)

    def download_from_peer(self, peer: Peer, results: Any) -> None:
        """Fetch pieces from *peer* and ``put`` each verified one into *results*.

        The peer's connection is closed when the peer has nothing more to give
        or fails.
        """
        try:
            log.info("Peer %s: Starting download", peer.address())
            if not self._send_interested(peer):
                return
            if not self._await_ready(peer):
                return
            while True:
                if peer.choked and not self._await_unchoke(peer):
                    return
                index = self.claim_piece(peer.bitfield)
                if index is None:
                    log.info("Peer %s: no more pieces to download", peer.address())
                    return
                data = self._fetch_piece(peer, index)
                if data is None:
                    return
                if hashlib.sha1(data).digest() != self.piece_hashes[index]:
                    log.error("Peer %s: piece %d hash mismatch", peer.address(), index)
                    self.release_piece(index)
                    continue
                log.info(
                    "Peer %s: downloaded piece %d (length=%d)",
                    peer.address(), index, len(data),
                )
                results.put(PieceResult(index=index, data=data))
        finally:
            if peer.connection is not None:
                peer.connection.close()
            log.info("Peer %s: DownloadFromPeer completed", peer.address())

    def write_piece(self, result: PieceResult) -> bool:
        """Write a piece into the files it overlaps; ``False`` if already written."""
        with self._lock:
            if result.index in self.completed:
                log.info("Piece %d already written, skipping", result.index)
                return False
            piece_start = result.index * self.piece_length
            piece_end = piece_start + len(result.data)
            for file in self.files:
                start = max(piece_start, file.offset)
                end = min(piece_end, file.offset + file.length)
                if start >= end:
                    continue
                chunk = result.data[start - piece_start : end - piece_start]
                try:
                    if file.handle is None:
                        raise OSError("file is not open")
                    file.handle.seek(start - file.offset)
                    file.handle.write(chunk)
                except OSError as exc:
                    log.error("Failed writing to %s: %s", file.path, exc)
                    self.downloaded[result.index] = False
            self.completed.add(result.index)
        return True

    def _open_files(self) -> None:
        for file in self.files:
            directory = file.path.parent
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DownloadError(f"failed to create directory {directory}: {exc}") from exc
            try:
                fd = os.open(file.path, os.O_RDWR | os.O_CREAT, 0o644)
                handle = os.fdopen(fd, "r+b")
            except OSError as exc:
                raise DownloadError(f"failed to create file {file.path}: {exc}") from exc
            try:
                handle.truncate(file.length)
            except OSError as exc:
                handle.close()
                raise DownloadError(f"failed to truncate file {file.path}: {exc}") from exc
            file.handle = handle

    def _worker(self, peer: Peer, results: queue.Queue) -> None:
        try:
            self.download_from_peer(peer, results)
        except Exception:
            log.exception("Peer %s: download failed", peer.address())
        log.info("Peer %s: StartDownload worker completed", peer.address())

    def _collect(self) -> None:
        results: queue.Queue = queue.Queue()
        with self._peers_lock:
            peers = list(self.peers)

        executor = ThreadPoolExecutor(max_workers=MAX_WORKERS)
        futures = []
        for peer in peers:
            if peer.connection is None:
                log.warning("Peer %s: invalid connection, skipping", peer.address())
                continue
            futures.append(executor.submit(self._worker, peer, results))

        def finish() -> None:
            wait(futures)
            executor.shutdown()
            log.info("All download workers completed")
            results.put(_DONE)

        threading.Thread(target=finish, name="download-finisher", daemon=True).start()

        meter = SpeedMeter()
        while (item := results.get()) is not _DONE:
            if not self.write_piece(item):
                continue
            meter.add(len(item.data))
            line = render_progress(
                self.metainfo.info.name, len(self.completed), self.num_pieces, meter.rate()
            )
            sys.stdout.write("\r" + line)
            sys.stdout.flush()
        print("\nDownload completed!")

    def start(self, output_dir: str | os.PathLike[str]) -> None:
        """Download every piece from the connected peers into *output_dir*."""
        self._initialize_pieces()
        self.completed = set()
        self.files = build_file_info(self.metainfo, output_dir)
        try:
            self._open_files()
            self._collect()
        finally:
            for file in self.files:
                if file.handle is not None:
                    file.handle.close()
                    file.handle = None
        if len(self.completed) != self.num_pieces:
            raise DownloadError(
                f"download incomplete: {len(self.completed)}/{self.num_pieces} pieces written"
            )

    def refresh_peers(self) -> threading.Thread:
        """Keep asking the trackers for peers in a background thread."""

        def loop() -> None:
            while True:
                try:
                    response = announce(self.metainfo)
                except TrackerError as exc:
                    log.warning("Failed to refresh peers: %s", exc)
                    time.sleep(_REFRESH_RETRY)
                    continue
                try:
                    new_peers = parse_peers(response.peers)
                except ValueError as exc:
                    log.warning("Failed to parse new peers: %s", exc)
                    time.sleep(_REFRESH_RETRY)
                    continue
                self.connect_to_peers(new_peers)
                time.sleep(response.interval)

        thread = threading.Thread(target=loop, name="peer-refresh", daemon=True)
        thread.start()
        return thread