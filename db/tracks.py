"""Persistence helpers for analyzed tracks keyed by YouTube video id."""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from db.sqlite import connect
from engine.errors import StorageTransient
from engine.models import TrackCandidate

# Analysis and numeric columns keep the stored value when the new run has none.
_COALESCED_COLUMNS = (
    "duration_seconds",
    "thumbnail_url",
    "youtube_url",
    "audio_url",
    "bpm",
    "musical_key",
    "camelot_key",
    "energy_level",
    "loudness",
    "tempo_confidence",
    "key_confidence",
    "waveform_peaks",
    "genre",
    "mood",
    "tags",
    "analysis_completed_at",
)
# Always replaced by the newest run.
_REPLACED_COLUMNS = ("title", "artist", "analysis_status")

_INSERT_COLUMNS = ("id", "youtube_id") + _REPLACED_COLUMNS + _COALESCED_COLUMNS + ("created_at",)


def _row_values(track: TrackCandidate) -> dict[str, Any]:
    return {
        "id": track.id,
        "youtube_id": track.youtube_id,
        "title": track.title,
        "artist": track.artist,
        "analysis_status": track.analysis_status,
        "duration_seconds": track.duration_seconds,
        "thumbnail_url": track.thumbnail_url,
        "youtube_url": track.youtube_url,
        "audio_url": track.audio_url,
        "bpm": track.bpm,
        "musical_key": track.musical_key,
        "camelot_key": track.camelot_key,
        "energy_level": track.energy_level,
        "loudness": track.loudness,
        "tempo_confidence": track.tempo_confidence,
        "key_confidence": track.key_confidence,
        "waveform_peaks": json.dumps(track.waveform_peaks) if track.waveform_peaks else None,
        "genre": track.genre,
        "mood": track.mood,
        "tags": json.dumps(track.tags) if track.tags else None,
        "analysis_completed_at": (
            track.analysis_completed_at.isoformat() if track.analysis_completed_at else None
        ),
        "created_at": track.created_at.isoformat(),
    }


def _build_upsert_sql() -> str:
    columns = ", ".join(_INSERT_COLUMNS)
    placeholders = ", ".join(f":{c}" for c in _INSERT_COLUMNS)
    assignments = [f"{c}=excluded.{c}" for c in _REPLACED_COLUMNS]
    assignments += [f"{c}=COALESCE(excluded.{c}, tracks.{c})" for c in _COALESCED_COLUMNS]
    assignments.append("updated_at=CURRENT_TIMESTAMP")
    return (
        f"INSERT INTO tracks ({columns}) VALUES ({placeholders}) "
        f"ON CONFLICT(youtube_id) DO UPDATE SET {', '.join(assignments)}"
    )


_UPSERT_SQL = _build_upsert_sql()


class TrackStore:
    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    def upsert(self, track: TrackCandidate) -> None:
        """Insert ``track`` or merge it into the existing row for its video id."""
        try:
            conn = connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageTransient("tracks.connect", str(exc)) from exc
        try:
            conn.execute(_UPSERT_SQL, _row_values(track))
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageTransient("tracks.upsert", str(exc)) from exc
        finally:
            conn.close()

    def get(self, youtube_id: str) -> dict[str, Any] | None:
        vid = (youtube_id or "").strip()
        if not vid:
            return None
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tracks WHERE youtube_id=? LIMIT 1", (vid,))
            row = cur.fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        out = dict(row)
        for column in ("waveform_peaks", "tags"):
            if out.get(column):
                out[column] = json.loads(out[column])
        return out

    def count(self) -> int:
        conn = connect(self.db_path)
        try:
            return int(conn.execute("SELECT COUNT(*) FROM tracks").fetchone()[0])
        finally:
            conn.close()
