import logging
from unittest import mock

import pytest

from swarmfetch import cli
from swarmfetch.bencode import encode


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _log_text(workdir):
    return (workdir / cli.LOG_FILE).read_text(encoding="utf-8")


def _write_torrent(path):
    data = encode(
        {
            "info": {
                "name": "a.txt",
                "piece length": 16384,
                "pieces": bytes(20),
                "length": 10,
            }
        }
    )
    path.write_bytes(data)
    return path


def test_too_few_arguments_prints_usage(workdir, capsys):
    assert cli.main([]) == 1
    err = capsys.readouterr().err
    assert cli.USAGE in err
    assert (workdir / cli.LOG_FILE).exists()


def test_one_argument_is_not_enough(workdir, capsys):
    assert cli.main(["only.torrent"]) == 1
    assert "usage" in capsys.readouterr().err


def test_missing_torrent_file_is_fatal(workdir):
    assert cli.main(["missing.torrent", "out"]) == 1
    text = _log_text(workdir)
    assert "opening file error" in text
    assert "CRITICAL" in text


def test_malformed_torrent_is_fatal(workdir):
    (workdir / "bad.torrent").write_bytes(b"d4:infoi1e")
    assert cli.main(["bad.torrent", "out"]) == 1
    assert "decoding error" in _log_text(workdir)


def test_no_reachable_tracker_is_fatal(workdir):
    _write_torrent(workdir / "good.torrent")
    with mock.patch("socket.getaddrinfo", side_effect=OSError("no network")):
        status = cli.main(["good.torrent", "out"])
    assert status == 1
    text = _log_text(workdir)
    assert "no peers received from any tracker" in text
    assert not (workdir / "out").exists()


def test_log_file_is_appended(workdir):
    first = cli.main(["first.torrent", "out"])
    second = cli.main(["second.torrent", "out"])
    assert first == 1
    assert second == 1
    text = _log_text(workdir)
    assert "first.torrent" in text
    assert "second.torrent" in text
    assert text.index("first.torrent") < text.index("second.torrent")


def test_logging_configuration_is_restored(workdir):
    root = logging.getLogger()
    handlers_before = list(root.handlers)
    level_before = root.level
    assert cli.main(["missing.torrent", "out"]) == 1
    assert root.handlers == handlers_before
    assert root.level == level_before