"""SQLite migrations for accounts, tracks and usage storage."""

from __future__ import annotations

import sqlite3


def ensure_account_tables(conn: sqlite3.Connection) -> None:
    """Ensure user and API key tables and indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            name TEXT,
            company TEXT,
            plan TEXT NOT NULL DEFAULT 'free',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS api_keys (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            key_hash TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            last_used_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            is_active INTEGER NOT NULL DEFAULT 1,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_user_id ON api_keys (user_id)")
    conn.commit()


def ensure_track_tables(conn: sqlite3.Connection) -> None:
    """Ensure the track catalog table exists; ``youtube_id`` is the upsert key."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS tracks (
            id TEXT PRIMARY KEY,
            youtube_id TEXT UNIQUE NOT NULL,
            title TEXT NOT NULL,
            artist TEXT,
            duration_seconds INTEGER,
            thumbnail_url TEXT,
            youtube_url TEXT,
            audio_url TEXT,
            bpm REAL,
            musical_key TEXT,
            camelot_key TEXT,
            energy_level REAL,
            loudness REAL,
            tempo_confidence REAL,
            key_confidence REAL,
            waveform_peaks TEXT,
            genre TEXT,
            mood TEXT,
            tags TEXT,
            analysis_status TEXT NOT NULL DEFAULT 'pending',
            analysis_completed_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tracks_bpm ON tracks (bpm) WHERE bpm IS NOT NULL")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_tracks_musical_key "
        "ON tracks (musical_key) WHERE musical_key IS NOT NULL"
    )
    conn.commit()


def ensure_usage_tables(conn: sqlite3.Connection) -> None:
    """Ensure append-only usage and request log tables exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS api_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            api_key_id TEXT,
            endpoint TEXT NOT NULL,
            method TEXT NOT NULL,
            status_code INTEGER NOT NULL,
            response_time_ms INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_api_usage_user_created "
        "ON api_usage (user_id, created_at)"
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS music_requests (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            api_key_id TEXT,
            original_query TEXT NOT NULL,
            processed_query TEXT,
            status TEXT NOT NULL,
            result TEXT,
            error_message TEXT,
            processing_time_ms INTEGER,
            created_at TEXT NOT NULL,
            completed_at TEXT
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_music_requests_user_id "
        "ON music_requests (user_id, created_at)"
    )
    conn.commit()


def ensure_all_tables(conn: sqlite3.Connection) -> None:
    ensure_account_tables(conn)
    ensure_track_tables(conn)
    ensure_usage_tables(conn)
