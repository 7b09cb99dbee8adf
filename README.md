# swarmfetch

swarmfetch is a small BitTorrent client. It reads a `.torrent` file,
asks HTTP and UDP trackers for peers, connects to them, downloads every
piece, checks each piece against its SHA-1 hash, and writes the files
to disk. It uses only the Python standard library.

## Installing

```
pip install .
```

## Downloading a torrent

```
swarmfetch path/to/file.torrent path/to/output-directory
```

A single-file torrent is written as `<output>/<name>`. A multi-file
torrent is written under `<output>/<name>/`, and its directory layout
is kept. While pieces arrive, a progress bar with the current speed
(averaged over the last five seconds) is shown. When it is finished,
`Download completed!` is printed.

Diagnostic messages are appended to `torrent.log` in the current
directory. If either argument is missing, a usage line is printed to
standard error. The command exits with status 0 when every piece has
been written. It exits with status 1 when the torrent cannot be read,
when no tracker returns any peers, or when the download is incomplete.

Besides the trackers named in the torrent, five well-known public UDP
trackers are always asked as well (`swarmfetch.tracker.PUBLIC_TRACKERS`).
Before a handshake, the client looks up its own external IP address with
a public echo service (`swarmfetch.peers.IP_ECHO_URL`) so that it does
not connect to itself. A peer is skipped when that lookup fails.

## Using it as a library

```python
from swarmfetch import metainfo, tracker
from swarmfetch.download import Download

meta = metainfo.load("file.torrent")
print(meta.info.name, meta.total_size())

peers = tracker.find_peers(meta)
download = Download(meta)
download.connect_to_peers(peers)
download.refresh_peers()
download.start("downloads")
```

The modules:

- `swarmfetch.bencode` – `decode` and `encode` for bencoded data.
- `swarmfetch.metainfo` – `load` and `parse_metainfo` give a `Metainfo`
  (with `InfoDict` and `FileEntry`). `extract_info_bytes` and
  `compute_info_hash` give the raw info dictionary and its SHA-1 hash.
  `Metainfo.total_size()` and `Metainfo.trackers()` are also here.
- `swarmfetch.peers` – `Peer`, `FileInfo`, `parse_peers`,
  `encode_peers`, `generate_peer_id`, `generate_transaction_id`,
  `is_http`, `is_udp`, `build_file_info` and `get_external_ip`.
- `swarmfetch.tracker` – `announce` and `find_peers`, and the pieces
  they are built from: `send_http_tracker_request`,
  `send_udp_tracker_request`, `build_http_announce_url`,
  `parse_http_response`, `parse_udp_announce_response`,
  `create_announce_request` and `collect_trackers`.
- `swarmfetch.wire` – the peer wire protocol: `Handshake`, `Message`,
  `MessageID`, `send_message`, `receive_message`, `perform_handshake`,
  `has_piece`, `split_piece_hashes` and `request_payload`.
- `swarmfetch.download` – the `Download` class that drives a download,
  together with `SpeedMeter`, `PieceResult`, `piece_size` and
  `render_progress`.
- `swarmfetch.cli` – `main`, the `swarmfetch` command.

`Download.refresh_peers()` announces again in a background thread, at
the interval the trackers ask for. Peers that it connects are added to
`Download.peers`. `Download.start()` works with the peers that are
connected at the moment it is called.

Errors are raised as exceptions: `BencodeError`, `MetainfoError`,
`TrackerError`, `ProtocolError` and `DownloadError`.

## What it does not do

- It only downloads. It does not listen for incoming connections, and it
  does not upload to other peers or seed. The announce still reports
  port 6881.
- It does not resume. Existing files are opened and sized to fit, but
  every piece is fetched again.
- It only understands compact IPv4 peer lists. DHT, web seeds and
  magnet links are not supported. The `nodes`, `url-list` and
  `httpseeds` fields are parsed but not used.

## Running the tests

```
pip install ".[test]"
pytest
```