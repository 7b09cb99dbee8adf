import hashlib
import io
import queue
import socket
import struct
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from swarmfetch.download import (
    Download,
    DownloadError,
    PieceResult,
    SpeedMeter,
    piece_size,
    render_progress,
)
from swarmfetch.metainfo import FileEntry, InfoDict, Metainfo
from swarmfetch.peers import FileInfo, Peer
from swarmfetch.wire import (
    Handshake,
    Message,
    MessageID,
    ProtocolError,
    receive_message,
    send_message,
)

CONTENT = bytes(range(40))
PIECE_LENGTH = 16
ALL_PIECES = b"\xe0"
MIB = 1024 * 1024


def make_meta(content=CONTENT, piece_length=PIECE_LENGTH, files=None, name="data.bin"):
    pieces = b"".join(
        hashlib.sha1(content[i : i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    )
    info = InfoDict(
        piece_length=piece_length,
        pieces=pieces,
        name=name,
        length=len(content) if files is None else 0,
        files=files or [],
    )
    return Metainfo(info=info)


def serve(sock, content, piece_length, bitfield, corrupt=()):
    remote = Peer(ip="127.0.0.1", port=0, connection=sock)
    corrupted = set()
    try:
        while True:
            message = receive_message(remote)
            if message is None:
                continue
            if message.id == MessageID.INTERESTED:
                send_message(remote, Message(MessageID.BITFIELD, bitfield))
                send_message(remote, Message(MessageID.UNCHOKE))
            elif message.id == MessageID.REQUEST:
                index, begin, length = struct.unpack(">III", message.payload)
                start = index * piece_length + begin
                block = content[start : start + length]
                if index in corrupt and index not in corrupted:
                    corrupted.add(index)
                    block = bytes(len(block))
                send_message(remote, Message(MessageID.PIECE, message.payload[:8] + block))
    except ProtocolError:
        pass
    finally:
        sock.close()


def seeded_peer(bitfield=ALL_PIECES, corrupt=()):
    ours, theirs = socket.socketpair()
    thread = threading.Thread(
        target=serve, args=(theirs, CONTENT, PIECE_LENGTH, bitfield, corrupt), daemon=True
    )
    thread.start()
    return Peer(ip="127.0.0.1", port=6881, connection=ours), thread


def drain(results):
    got = {}
    while not results.empty():
        result = results.get()
        got[result.index] = result.data
    return got


def test_piece_size_regular_and_last():
    assert piece_size(0, 3, 16, 40) == 16
    assert piece_size(2, 3, 16, 40) == 8
    assert piece_size(2, 3, 16, 48) == 16


def test_piece_size_rejects_zero_length():
    with pytest.raises(ValueError):
        piece_size(0, 1, 0, 10)


def test_render_progress_half():
    line = render_progress("x", 1, 2, 1.5, 10)
    assert line == "[x]\t[»»»»»-----] (50.00/100%) [1.50 MB/s]"


def test_render_progress_bar_width_invariant():
    for done in range(5):
        line = render_progress("movie", done, 4, 0.0, 8)
        bar = line.split("\t")[1].split("]")[0][1:]
        assert len(bar) == 8
        assert bar.count("»") == done * 2


def test_speed_meter_single_sample_uses_window():
    meter = SpeedMeter()
    meter.add(5 * MIB, now=100.0)
    assert meter.rate() == pytest.approx(1.0)


def test_speed_meter_span_of_samples():
    meter = SpeedMeter()
    meter.add(MIB, now=0.0)
    meter.add(MIB, now=2.0)
    assert meter.rate() == pytest.approx(1.0)


def test_speed_meter_drops_old_samples():
    meter = SpeedMeter()
    meter.add(100 * MIB, now=0.0)
    meter.add(5 * MIB, now=10.0)
    single = SpeedMeter()
    single.add(5 * MIB, now=10.0)
    assert meter.rate() == pytest.approx(single.rate())


def test_empty_speed_meter_is_zero():
    assert SpeedMeter().rate() == 0.0


def test_invalid_pieces_length_rejected():
    meta = Metainfo(info=InfoDict(piece_length=16, pieces=b"x" * 21))
    with pytest.raises(DownloadError):
        Download(meta)


def test_claim_and_release_piece():
    dl = Download(make_meta())
    assert dl.num_pieces == 3
    assert dl.claim_piece(b"\x80") == 0
    assert dl.claim_piece(b"\x80") is None
    dl.release_piece(0)
    assert dl.claim_piece(b"\x80") == 0
    assert dl.claim_piece(None) is None


def test_claim_piece_skips_claimed():
    dl = Download(make_meta())
    claimed = [dl.claim_piece(ALL_PIECES) for _ in range(4)]
    assert claimed == [0, 1, 2, None]
    assert dl.downloaded == [True, True, True]


def test_write_piece_spans_files():
    dl = Download(make_meta())
    first, second = io.BytesIO(bytes(10)), io.BytesIO(bytes(30))
    dl.files = [
        FileInfo(path=Path("a"), length=10, offset=0, handle=first),
        FileInfo(path=Path("b"), length=30, offset=10, handle=second),
    ]
    assert dl.write_piece(PieceResult(index=0, data=CONTENT[:16])) is True
    assert first.getvalue() == CONTENT[:10]
    assert second.getvalue()[:6] == CONTENT[10:16]
    assert dl.write_piece(PieceResult(index=0, data=CONTENT[:16])) is False
    assert dl.completed == {0}


def test_write_piece_without_handle_releases_piece():
    dl = Download(make_meta())
    dl.downloaded[1] = True
    dl.files = [FileInfo(path=Path("a"), length=40, offset=0)]
    assert dl.write_piece(PieceResult(index=1, data=CONTENT[16:32])) is True
    assert dl.downloaded[1] is False
    assert 1 in dl.completed


def test_download_from_peer_fetches_everything():
    dl = Download(make_meta(), retry_delay=0)
    peer, thread = seeded_peer()
    results = queue.Queue()
    dl.download_from_peer(peer, results)
    thread.join(5)
    assert drain(results) == {0: CONTENT[:16], 1: CONTENT[16:32], 2: CONTENT[32:]}
    assert dl.downloaded == [True, True, True]
    assert peer.connection.fileno() == -1
    assert peer.bitfield == ALL_PIECES
    assert peer.choked is False


def test_download_from_peer_only_offered_pieces():
    dl = Download(make_meta(), retry_delay=0)
    peer, thread = seeded_peer(bitfield=b"\x80")
    results = queue.Queue()
    dl.download_from_peer(peer, results)
    thread.join(5)
    assert drain(results) == {0: CONTENT[:16]}
    assert dl.downloaded == [True, False, False]


def test_download_from_peer_retries_bad_hash():
    dl = Download(make_meta(), retry_delay=0)
    peer, thread = seeded_peer(corrupt={1})
    results = queue.Queue()
    dl.download_from_peer(peer, results)
    thread.join(5)
    assert drain(results)[1] == CONTENT[16:32]


def test_start_single_file(tmp_path, capsys):
    dl = Download(make_meta(), retry_delay=0)
    peer, thread = seeded_peer()
    dl.peers = [peer]
    dl.start(tmp_path)
    thread.join(5)
    assert (tmp_path / "data.bin").read_bytes() == CONTENT
    assert dl.completed == {0, 1, 2}
    assert "Download completed!" in capsys.readouterr().out
    assert all(file.handle is None for file in dl.files)


def test_start_multi_file(tmp_path):
    files = [FileEntry(length=10, path=["a.txt"]), FileEntry(length=30, path=["sub", "b.txt"])]
    dl = Download(make_meta(files=files, name="bundle"), retry_delay=0)
    peer, thread = seeded_peer()
    dl.peers = [peer]
    dl.start(tmp_path)
    thread.join(5)
    assert (tmp_path / "bundle" / "a.txt").read_bytes() == CONTENT[:10]
    assert (tmp_path / "bundle" / "sub" / "b.txt").read_bytes() == CONTENT[10:]


def test_start_incomplete_raises(tmp_path):
    dl = Download(make_meta(), retry_delay=0)
    peer, thread = seeded_peer(bitfield=b"\x80")
    dl.peers = [peer]
    with pytest.raises(DownloadError):
        dl.start(tmp_path)
    thread.join(5)
    written = (tmp_path / "data.bin").read_bytes()
    assert len(written) == len(CONTENT)
    assert written[:16] == CONTENT[:16]


def test_start_without_connected_peers_raises(tmp_path):
    dl = Download(make_meta(), retry_delay=0)
    dl.peers = [Peer(ip="127.0.0.1", port=6881)]
    with pytest.raises(DownloadError):
        dl.start(tmp_path)
    assert dl.completed == set()


def _handshake_server(info_hash, remote_id):
    server = socket.socket()
    server.bind(("127.0.0.1", 0))
    server.listen(1)

    def run():
        conn, _ = server.accept()
        with conn:
            data = b""
            while len(data) < 68:
                chunk = conn.recv(68 - len(data))
                if not chunk:
                    return
                data += chunk
            conn.sendall(Handshake(info_hash=info_hash, peer_id=remote_id).pack())
            conn.recv(1)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return server, server.getsockname()[1], thread


def _closed_port():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def test_connect_to_peers_keeps_successful_handshakes():
    meta = make_meta()
    meta.info.info_hash = b"\x11" * 20
    remote_id = b"-XX0000-000000000000"
    server, port, thread = _handshake_server(meta.info.info_hash, remote_id)
    echo = MagicMock()
    echo.__enter__.return_value.read.return_value = b'{"origin": "203.0.113.9"}'
    dl = Download(meta)
    candidates = [
        Peer(ip="127.0.0.1", port=port),
        Peer(ip="127.0.0.1", port=_closed_port()),
        Peer(ip="203.0.113.9", port=port),
    ]
    with patch("urllib.request.urlopen", return_value=echo):
        connected = dl.connect_to_peers(candidates)
    try:
        assert len(connected) == 1
        assert connected[0].peer_id == remote_id.decode("latin-1")
        assert connected[0].choked is True
        assert dl.peers == connected
    finally:
        for peer in connected:
            peer.connection.close()
        thread.join(5)
        server.close()