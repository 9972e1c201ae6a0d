import asyncio
import logging

import anyio

# Strong references so detached tasks are not garbage collected mid-flight.
_PENDING = set()


def fire_and_forget(fn, *args, label="background"):
    """Run a blocking ``fn(*args)`` in a worker thread without awaiting it.

    Errors are logged here and never reach the caller.
    """

    async def _runner():
        try:
            await anyio.to_thread.run_sync(fn, *args)
        except Exception:
            logging.exception("Background task failed: %s", label)

    task = asyncio.create_task(_runner())
    _PENDING.add(task)
    task.add_done_callback(_PENDING.discard)
    return task


async def drain(timeout=5.0):
    """Wait briefly for outstanding background tasks (shutdown and tests)."""
    pending = list(_PENDING)
    if not pending:
        return
    # Tasks still running in a worker thread are left alone when the timeout passes.
    _done, still_running = await asyncio.wait(pending, timeout=timeout)
    if still_running:
        logging.warning("Shutdown timeout while waiting for %s background tasks", len(still_running))
