import asyncio
import logging
import threading
import time

from api import tasks


def test_background_failure_is_logged_and_swallowed(caplog) -> None:
    def _boom(user_id):
        raise RuntimeError(f"usage log unavailable for {user_id}")

    async def _run():
        task = tasks.fire_and_forget(_boom, "user-1", label="usage_record")
        await tasks.drain(1.0)
        return task

    with caplog.at_level(logging.ERROR):
        task = asyncio.run(_run())

    assert task.done()
    assert task.exception() is None
    assert "Background task failed: usage_record" in caplog.text
    assert "usage log unavailable for user-1" in caplog.text
    assert task not in tasks._PENDING


def test_caller_continues_before_background_work_finishes() -> None:
    release = threading.Event()
    finished = []

    def _slow():
        release.wait(2.0)
        finished.append("done")

    async def _run():
        task = tasks.fire_and_forget(_slow, label="slow")
        await asyncio.sleep(0)
        before = list(finished)
        release.set()
        await tasks.drain(2.0)
        return task, before

    task, before = asyncio.run(_run())

    assert before == []
    assert finished == ["done"]
    assert task.exception() is None


def test_drain_waits_for_pending_tasks() -> None:
    finished = []

    def _work(n):
        time.sleep(0.05)
        finished.append(n)

    async def _run():
        for n in range(3):
            tasks.fire_and_forget(_work, n, label=f"work-{n}")
        await tasks.drain(2.0)

    asyncio.run(_run())

    assert sorted(finished) == [0, 1, 2]
    assert not tasks._PENDING


def test_drain_returns_after_timeout(caplog) -> None:
    release = threading.Event()

    async def _run():
        task = tasks.fire_and_forget(release.wait, 5.0, label="stuck")
        started = time.monotonic()
        await tasks.drain(0.05)
        waited = time.monotonic() - started
        still_pending = not task.done()
        release.set()
        await task
        return task, waited, still_pending

    with caplog.at_level(logging.WARNING):
        task, waited, still_pending = asyncio.run(_run())

    assert waited < 1.0
    assert still_pending
    assert task.exception() is None
    assert "Shutdown timeout while waiting for 1 background tasks" in caplog.text


def test_drain_without_pending_tasks_is_a_no_op() -> None:
    asyncio.run(tasks.drain(0.01))
