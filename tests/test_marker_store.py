from __future__ import annotations

import json
from pathlib import Path

import pytest

from dash_updater import service
from dash_updater.service import (
    LAST_UPDATE_FILE_NAME,
    Marker,
    MarkerIOError,
    MarkerStore,
    default_marker_path,
)


def test_missing_file_loads_empty_marker(tmp_path: Path) -> None:
    store = MarkerStore(tmp_path / "absent.json")
    assert store.load() == Marker(sha1="")


@pytest.mark.parametrize("sha1", ["", "abc123", "0" * 40])
def test_save_then_load_returns_same_marker(tmp_path: Path, sha1: str) -> None:
    store = MarkerStore(tmp_path / "marker.json")
    store.save(Marker(sha1=sha1))
    assert store.load() == Marker(sha1=sha1)


def test_save_overwrites_previous_content(tmp_path: Path) -> None:
    path = tmp_path / "marker.json"
    path.write_text('{"sha1": "old", "extra": true}', encoding="utf-8")

    MarkerStore(path).save(Marker(sha1="new"))

    assert json.loads(path.read_text(encoding="utf-8")) == {"sha1": "new"}


def test_save_creates_parent_directories(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "dir" / "marker.json"
    MarkerStore(path).save(Marker(sha1="abc"))
    assert path.exists()


def test_object_without_sha1_is_empty_marker(tmp_path: Path) -> None:
    path = tmp_path / "marker.json"
    path.write_text("{}", encoding="utf-8")
    assert MarkerStore(path).load() == Marker()


@pytest.mark.parametrize(
    "content", [b"not json", b"[1, 2]", b'{"sha1": 5}', b'{"sha1": "\xff\xfe"}']
)
def test_corrupt_file_raises_marker_error(tmp_path: Path, content: bytes) -> None:
    path = tmp_path / "marker.json"
    path.write_bytes(content)
    with pytest.raises(MarkerIOError) as excinfo:
        MarkerStore(path).load()
    assert "decoding last update file" in str(excinfo.value)


def test_unwritable_location_raises_marker_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    with pytest.raises(MarkerIOError):
        MarkerStore(blocker / "marker.json").save(Marker(sha1="abc"))


def test_default_path_is_dotfile_in_home(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    assert default_marker_path() == tmp_path / LAST_UPDATE_FILE_NAME
    assert MarkerStore().path == tmp_path / ".dash-script-last-update.json"


def test_save_leaves_only_the_marker_file(tmp_path: Path) -> None:
    path = tmp_path / "marker.json"
    store = MarkerStore(path)
    store.save(Marker(sha1="one"))
    store.save(Marker(sha1="two"))
    assert sorted(p.name for p in tmp_path.iterdir()) == ["marker.json"]


def test_interrupted_save_keeps_previous_marker(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "marker.json"
    store = MarkerStore(path)
    store.save(Marker(sha1="applied"))

    def disk_full(*args, **kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(service.json, "dump", disk_full)
    with pytest.raises(MarkerIOError):
        store.save(Marker(sha1="next"))
    monkeypatch.undo()

    assert store.load() == Marker(sha1="applied")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["marker.json"]
