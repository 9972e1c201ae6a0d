from __future__ import annotations

import logging
from typing import Any

from config.settings import RECENT_ACTIVITY_MAX_ENTRIES, RECENT_ACTIVITY_TTL_SECONDS
from engine.errors import StorageTransient
from engine.models import UsageRecord

logger = logging.getLogger(__name__)


def recent_activity_key(subject_id: str) -> str:
    return f"usage:recent:{subject_id}"


class UsageRecorder:
    """Write one usage entry per protected request.

    Both sinks are isolated: a failing log write never stops the recent-activity
    push and neither failure reaches the caller.
    """

    def __init__(self, usage_log, cache=None) -> None:
        self._usage_log = usage_log
        self._cache = cache

    def record(
        self,
        subject_id: str,
        key_id: str | None,
        endpoint: str,
        method: str,
        status_code: int,
        latency_ms: int,
    ) -> UsageRecord:
        record = UsageRecord(
            subject_id=subject_id,
            key_id=key_id,
            endpoint=endpoint,
            method=method.upper(),
            status_code=int(status_code),
            latency_ms=max(0, int(latency_ms)),
        )
        try:
            self._usage_log.append(record)
        except Exception:
            logger.exception("usage_log_write_failed subject=%s endpoint=%s", subject_id, endpoint)

        if self._cache is not None:
            try:
                self._cache.push_recent(
                    recent_activity_key(subject_id),
                    record.to_dict(),
                    max_entries=RECENT_ACTIVITY_MAX_ENTRIES,
                    ttl_seconds=RECENT_ACTIVITY_TTL_SECONDS,
                )
            except Exception:
                logger.exception("usage_recent_push_failed subject=%s", subject_id)
        return record

    def recent(self, subject_id: str, limit: int = RECENT_ACTIVITY_MAX_ENTRIES) -> list[dict[str, Any]]:
        if self._cache is None:
            return []
        try:
            return self._cache.recent(recent_activity_key(subject_id), limit)
        except StorageTransient:
            logger.warning("usage_recent_read_failed subject=%s", subject_id)
            return []
