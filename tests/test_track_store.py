from __future__ import annotations

import sqlite3

import pytest

from db.tracks import TrackStore
from engine.errors import StorageTransient
from engine.models import TrackCandidate


def _track(video_id="dQw4w9WgXcQ", title="Original", **fields):
    track = TrackCandidate(youtube_id=video_id, title=title)
    for name, value in fields.items():
        setattr(track, name, value)
    return track


def test_upsert_inserts_then_merges_by_video_id(db_path) -> None:
    store = TrackStore(db_path)
    first = _track(bpm=128.0, musical_key="A minor", waveform_peaks=[0.1, 0.5], artist="DJ One")
    first.analysis_status = "completed"
    store.upsert(first)

    second = _track(title="Renamed", artist=None)
    store.upsert(second)

    assert store.count() == 1
    row = store.get("dQw4w9WgXcQ")
    assert row["id"] == first.id
    assert row["title"] == "Renamed"
    assert row["artist"] is None
    assert row["bpm"] == 128.0
    assert row["musical_key"] == "A minor"
    assert row["waveform_peaks"] == [0.1, 0.5]
    assert row["analysis_status"] == "pending"


def test_newer_analysis_replaces_stored_values(db_path) -> None:
    store = TrackStore(db_path)
    store.upsert(_track(bpm=120.0))
    store.upsert(_track(bpm=124.0, camelot_key="8A"))

    row = store.get("dQw4w9WgXcQ")
    assert row["bpm"] == 124.0
    assert row["camelot_key"] == "8A"


def test_distinct_videos_get_distinct_rows(db_path) -> None:
    store = TrackStore(db_path)
    store.upsert(_track("aaaaaaaaaaa"))
    store.upsert(_track("bbbbbbbbbbb", tags=["house", "deep"]))

    assert store.count() == 2
    assert store.get("bbbbbbbbbbb")["tags"] == ["house", "deep"]


def test_get_unknown_or_blank_returns_none(db_path) -> None:
    store = TrackStore(db_path)
    assert store.get("missing0000") is None
    assert store.get("  ") is None


def test_database_errors_surface_as_storage_transient(db_path, monkeypatch) -> None:
    store = TrackStore(db_path)

    def _broken(_path=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr("db.tracks.connect", _broken)
    with pytest.raises(StorageTransient):
        store.upsert(_track())
