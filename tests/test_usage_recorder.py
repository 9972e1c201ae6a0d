from __future__ import annotations

from db.usage_log import UsageLog
from engine.errors import StorageTransient
from engine.usage import UsageRecorder, recent_activity_key


class _BrokenLog:
    def append(self, record):
        raise StorageTransient("usage_log.append", "disk full")


def test_record_writes_log_row_and_recent_entry(db_path, cache) -> None:
    log = UsageLog(db_path)
    recorder = UsageRecorder(log, cache)

    recorder.record("user-1", "key-1", "/v1/music/process", "post", 200, 153)

    rows = log.usage_rows("user-1")
    assert len(rows) == 1
    assert rows[0]["endpoint"] == "/v1/music/process"
    assert rows[0]["method"] == "POST"
    assert rows[0]["status_code"] == 200
    assert rows[0]["response_time_ms"] == 153

    recent = recorder.recent("user-1")
    assert recent[0]["endpoint"] == "/v1/music/process"
    assert recent[0]["status_code"] == 200


def test_recent_list_is_bounded_and_newest_first(db_path, cache) -> None:
    recorder = UsageRecorder(UsageLog(db_path), cache)
    for i in range(120):
        recorder.record("user-2", "key-2", f"/v1/usage?i={i}", "GET", 200, i)

    recent = recorder.recent("user-2")
    assert len(recent) == 100
    assert recent[0]["endpoint"] == "/v1/usage?i=119"
    assert recent[-1]["endpoint"] == "/v1/usage?i=20"


def test_recent_activity_expires(db_path, cache, clock) -> None:
    recorder = UsageRecorder(UsageLog(db_path), cache)
    recorder.record("user-3", None, "/v1/usage", "GET", 200, 5)

    clock.advance(3601)
    assert recorder.recent("user-3") == []


def test_log_failure_does_not_block_recent_push(cache, redis_client) -> None:
    recorder = UsageRecorder(_BrokenLog(), cache)

    record = recorder.record("user-4", "key-4", "/v1/music/search", "GET", 429, 3)

    assert record.status_code == 429
    assert redis_client.values[recent_activity_key("user-4")]


def test_cache_failure_is_swallowed(db_path, cache, redis_client) -> None:
    log = UsageLog(db_path)
    recorder = UsageRecorder(log, cache)
    redis_client.fail = True

    recorder.record("user-5", "key-5", "/v1/music/search", "GET", 200, 10)

    assert len(log.usage_rows("user-5")) == 1
    assert recorder.recent("user-5") == []


def test_every_status_code_is_recorded(db_path, cache) -> None:
    log = UsageLog(db_path)
    recorder = UsageRecorder(log, cache)
    for status in (200, 400, 429, 500):
        recorder.record("user-6", "key-6", "/v1/music/process", "POST", status, 1)

    assert [row["status_code"] for row in log.usage_rows("user-6")] == [200, 400, 429, 500]
