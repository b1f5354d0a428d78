import io
import json
import os
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
import whisperd_store
from whisperd_store import (
    HealError,
    InvalidMetricName,
    InvalidUpload,
    MetricPaths,
    PathLocks,
    delete_metric,
    heal_metric,
    stat_metric,
    validate_heal_request,
)


def _staging(tmp_path):
    staging = tmp_path / "staging"
    staging.mkdir()
    return staging


def _unused_merge(src, dst):
    raise AssertionError("merge must not be called")


def test_metric_to_path_and_back(tmp_path):
    paths = MetricPaths(str(tmp_path))

    path = paths.metric_to_path("carbon.agents.host.cpu")

    assert path == os.path.join(str(tmp_path), "carbon", "agents", "host", "cpu.wsp")
    assert paths.path_to_metric(path) == "carbon.agents.host.cpu"


@pytest.mark.parametrize("name", ["", "a..b", ".a", "a.", "..", "a/b", "../etc/passwd", "a\x00b"])
def test_metric_to_path_rejects_bad_names(tmp_path, name):
    paths = MetricPaths(str(tmp_path))
    with pytest.raises(InvalidMetricName):
        paths.metric_to_path(name)


def test_path_to_metric_rejects_paths_outside_prefix(tmp_path):
    paths = MetricPaths(str(tmp_path / "whisper"))
    with pytest.raises(ValueError):
        paths.path_to_metric(str(tmp_path / "elsewhere" / "x.wsp"))


def test_stat_metric_reports_file_details(tmp_path):
    path = tmp_path / "cpu.wsp"
    path.write_bytes(b"x" * 64)
    os.chmod(path, 0o640)
    os.utime(path, (1_700_000_000, 1_700_000_000))

    stat = stat_metric("cpu", str(path))

    assert stat.Name == "cpu"
    assert stat.Size == 64
    assert stat.Mode == 0o640
    assert stat.ModTime == 1_700_000_000
    assert json.loads(stat.to_json()) == {"Name": "cpu", "Size": 64, "Mode": 0o640, "ModTime": 1_700_000_000}


def test_stat_metric_missing_file_raises_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        stat_metric("missing", str(tmp_path / "missing.wsp"))


def test_stat_metric_with_file_as_parent_is_not_a_missing_file(tmp_path):
    (tmp_path / "a").write_bytes(b"plain file")

    with pytest.raises(NotADirectoryError):
        stat_metric("a.cpu", str(tmp_path / "a" / "cpu.wsp"))


def test_delete_metric_removes_file(tmp_path):
    path = tmp_path / "cpu.wsp"
    path.write_bytes(b"data")

    assert delete_metric(str(path), fatal_if_missing=True) is True
    assert not path.exists()


def test_delete_metric_missing_file(tmp_path):
    path = str(tmp_path / "missing.wsp")

    assert delete_metric(path, fatal_if_missing=False) is False
    with pytest.raises(FileNotFoundError):
        delete_metric(path, fatal_if_missing=True)


def test_delete_metric_on_directory_is_not_a_missing_file(tmp_path):
    path = tmp_path / "cpu.wsp"
    path.mkdir()

    with pytest.raises(IsADirectoryError):
        delete_metric(str(path), fatal_if_missing=False)
    assert path.is_dir()


@pytest.mark.parametrize(
    "content_type,content_length",
    [
        ("text/plain", "40"),
        (None, "40"),
        ("application/octet-stream", "20"),
        ("application/octet-stream", "28"),
        ("application/octet-stream", "forty"),
        ("application/octet-stream", None),
        ("application/octet-stream", ""),
        ("application/octet-stream", "+40"),
        ("application/octet-stream", "-40"),
        ("application/octet-stream", "2_9"),
        ("application/octet-stream", "\uff14\uff10"),
    ],
)
def test_validate_heal_request_rejects(content_type, content_length):
    with pytest.raises(InvalidUpload):
        validate_heal_request(content_type, content_length)


def test_validate_heal_request_accepts_octet_stream():
    assert validate_heal_request("application/octet-stream", "29") == 29
    assert validate_heal_request("Application/Octet-Stream; charset=binary", " 40 ") == 40


def test_heal_creates_missing_metric(tmp_path):
    staging = _staging(tmp_path)
    body = bytes(range(40))
    dest = tmp_path / "whisper" / "a" / "b" / "c.wsp"

    result = heal_metric(io.BytesIO(body), "application/octet-stream", "40", str(dest), str(staging), _unused_merge)

    assert dest.read_bytes() == body
    assert result.merged is False
    assert result.size == 40
    assert list(staging.iterdir()) == []


def test_heal_merges_existing_metric_once(tmp_path):
    staging = _staging(tmp_path)
    dest = tmp_path / "cpu.wsp"
    dest.write_bytes(b"old" * 20)
    body = b"n" * 64
    calls = []

    def merge(src, dst):
        calls.append((src, dst))
        assert Path(src).parent == staging
        assert Path(src).read_bytes() == body

    result = heal_metric(io.BytesIO(body), "application/octet-stream", "64", str(dest), str(staging), merge)

    assert len(calls) == 1
    assert calls[0][1] == str(dest)
    assert result.merged is True
    assert dest.read_bytes() == b"old" * 20
    assert list(staging.iterdir()) == []


def test_heal_merge_failure_still_removes_staging_file(tmp_path, caplog):
    staging = _staging(tmp_path)
    dest = tmp_path / "cpu.wsp"
    dest.write_bytes(b"old" * 20)

    def merge(src, dst):
        raise ValueError("archive layout mismatch")

    with pytest.raises(HealError):
        heal_metric(io.BytesIO(b"n" * 64), "application/octet-stream", "64", str(dest), str(staging), merge)

    assert list(staging.iterdir()) == []
    assert "Error backfilling" in caplog.text


def test_heal_rejects_small_upload_before_touching_disk(tmp_path):
    staging = _staging(tmp_path)
    dest = tmp_path / "whisper" / "a" / "b.wsp"

    with pytest.raises(InvalidUpload):
        heal_metric(io.BytesIO(b"x" * 20), "application/octet-stream", "20", str(dest), str(staging), _unused_merge)

    assert not (tmp_path / "whisper").exists()
    assert list(staging.iterdir()) == []


def test_heal_short_body_is_an_error_and_cleans_up(tmp_path):
    staging = _staging(tmp_path)
    dest = tmp_path / "whisper" / "b.wsp"

    with pytest.raises(HealError, match="ended after 40 of 100 bytes"):
        heal_metric(io.BytesIO(b"x" * 40), "application/octet-stream", "100", str(dest), str(staging), _unused_merge)

    assert not dest.exists()
    assert list(staging.iterdir()) == []


def test_heal_missing_staging_dir_fails(tmp_path):
    dest = tmp_path / "b.wsp"

    with pytest.raises(HealError, match="staging file"):
        heal_metric(io.BytesIO(b"x" * 40), "application/octet-stream", "40", str(dest), str(tmp_path / "nope"), _unused_merge)

    assert not dest.exists()


def test_path_locks_serialize_same_path():
    locks = PathLocks()
    entered = threading.Event()
    order = []

    def second():
        with locks.hold("/m/a.wsp"):
            order.append("second")

    with locks.hold("/m/a.wsp"):
        thread = threading.Thread(target=second)
        thread.start()
        # A different path is not blocked by the held one.
        with locks.hold("/m/b.wsp"):
            entered.set()
        thread.join(0.2)
        assert thread.is_alive()
        order.append("first")
    thread.join(5)

    assert entered.is_set()
    assert order == ["first", "second"]
    assert len(locks) == 0


def test_heal_fails_when_destination_parent_is_a_file(tmp_path, caplog):
    staging = _staging(tmp_path)
    (tmp_path / "a").write_bytes(b"plain file")
    dest = tmp_path / "a" / "cpu.wsp"

    with pytest.raises(HealError, match="Cannot stat"):
        heal_metric(io.BytesIO(b"x" * 40), "application/octet-stream", "40", str(dest), str(staging), _unused_merge)

    assert (tmp_path / "a").read_bytes() == b"plain file"
    assert list(staging.iterdir()) == []
    assert "Error stat'ing file" in caplog.text


def test_heal_copy_failure_removes_partial_destination(tmp_path, monkeypatch, caplog):
    staging = _staging(tmp_path)
    dest = tmp_path / "whisper" / "cpu.wsp"

    def failing_copy(src, dst, length=0):
        dst.write(src.read(8))
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(whisperd_store.shutil, "copyfileobj", failing_copy)

    with pytest.raises(HealError, match="Cannot write"):
        heal_metric(io.BytesIO(b"x" * 40), "application/octet-stream", "40", str(dest), str(staging), _unused_merge)

    assert not dest.exists()
    assert list(staging.iterdir()) == []
    assert "Error copying" in caplog.text
