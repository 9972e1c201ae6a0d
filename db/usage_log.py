"""Append-only writers for API usage and music request summaries."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any

from db.sqlite import connect
from engine.errors import StorageTransient
from engine.models import UsageRecord


class UsageLog:
    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    def append(self, record: UsageRecord) -> None:
        self._execute(
            "usage_log.append",
            """
            INSERT INTO api_usage (
                user_id, api_key_id, endpoint, method, status_code, response_time_ms, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.subject_id,
                record.key_id,
                record.endpoint,
                record.method,
                int(record.status_code),
                int(record.latency_ms),
                record.timestamp.isoformat(),
            ),
        )

    def write_request(
        self,
        *,
        request_id: str,
        user_id: str | None,
        api_key_id: str | None,
        original_query: str,
        processed_query: dict[str, Any] | None,
        status: str,
        result: dict[str, Any] | None,
        processing_time_ms: int,
        error_message: str | None = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._execute(
            "usage_log.write_request",
            """
            INSERT INTO music_requests (
                id, user_id, api_key_id, original_query, processed_query, status,
                result, error_message, processing_time_ms, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request_id,
                user_id,
                api_key_id,
                original_query,
                json.dumps(processed_query) if processed_query is not None else None,
                status,
                json.dumps(result) if result is not None else None,
                error_message,
                int(processing_time_ms),
                now,
                now,
            ),
        )

    def usage_rows(self, user_id: str) -> list[dict[str, Any]]:
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM api_usage WHERE user_id=? ORDER BY id ASC",
                (user_id,),
            )
            return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def _execute(self, operation: str, sql: str, params: tuple) -> None:
        try:
            conn = connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageTransient(operation, str(exc)) from exc
        try:
            conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageTransient(operation, str(exc)) from exc
        finally:
            conn.close()
