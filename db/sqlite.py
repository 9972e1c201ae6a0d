"""Shared SQLite connection helpers."""

from __future__ import annotations

import sqlite3

from config.settings import get_settings
from db.migrations import ensure_all_tables


def resolve_db_path(db_path: str | None = None) -> str:
    return db_path or get_settings().db_path


def connect(db_path: str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(resolve_db_path(db_path), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize(db_path: str | None = None) -> None:
    """Create every table the service needs."""
    conn = connect(db_path)
    try:
        ensure_all_tables(conn)
    finally:
        conn.close()


def ping(db_path: str | None = None) -> bool:
    try:
        conn = connect(db_path)
    except sqlite3.Error:
        return False
    try:
        conn.execute("SELECT 1").fetchone()
        return True
    except sqlite3.Error:
        return False
    finally:
        conn.close()
