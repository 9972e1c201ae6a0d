"""Per-plan dual-window quotas over shared atomic counters.

Windows are fixed-origin tumbling buckets (``floor(now / size) * size``), not
true sliding windows: a burst straddling a boundary can briefly reach twice
the nominal rate. Rejected attempts still consume quota.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from config.settings import BURST_WINDOW_SECONDS, PLAN_LIMITS, SUSTAINED_WINDOW_SECONDS
from engine.errors import StorageTransient
from engine.models import Plan, RateLimitConfig, RateLimitDecision, WindowKind

logger = logging.getLogger(__name__)

RATE_LIMITS: dict[Plan, RateLimitConfig] = {
    Plan(name): RateLimitConfig(
        sustained_limit=sustained,
        sustained_window=SUSTAINED_WINDOW_SECONDS,
        burst_limit=burst,
        burst_window=BURST_WINDOW_SECONDS,
    )
    for name, (sustained, burst) in PLAN_LIMITS.items()
}
for _config in RATE_LIMITS.values():
    _config.validate()


def window_start(now: float, size: int) -> int:
    return int(math.floor(now / size)) * size


def counter_key(subject_id: str, kind: WindowKind, start: int) -> str:
    return f"rate_limit:{subject_id}:{kind.value}:{start}"


class RateLimiter:
    def __init__(
        self,
        counters,
        *,
        clock: Callable[[], float] = time.time,
        limits: dict[Plan, RateLimitConfig] | None = None,
    ) -> None:
        self._counters = counters
        self._clock = clock
        self._limits = limits or RATE_LIMITS

    def config_for(self, plan: Plan | str) -> RateLimitConfig:
        return self._limits.get(Plan.parse(plan)) or self._limits[Plan.FREE]

    def check(self, subject_id: str, plan: Plan | str) -> RateLimitDecision:
        """Count one attempt against both windows and decide.

        Storage failures fail open: the request is allowed and the error logged.
        """
        config = self.config_for(plan)
        now = self._clock()
        sustained_start = window_start(now, config.sustained_window)
        burst_start = window_start(now, config.burst_window)
        sustained_reset = sustained_start + config.sustained_window
        burst_reset = burst_start + config.burst_window

        try:
            sustained_count = self._counters.incr_with_ttl(
                counter_key(subject_id, WindowKind.SUSTAINED, sustained_start),
                max(1, math.ceil(sustained_reset - now)),
            )
            burst_count = self._counters.incr_with_ttl(
                counter_key(subject_id, WindowKind.BURST, burst_start),
                max(1, math.ceil(burst_reset - now)),
            )
        except StorageTransient:
            logger.exception("rate_limit_fail_open subject=%s", subject_id)
            return RateLimitDecision(
                limit_sustained=config.sustained_limit,
                limit_burst=config.burst_limit,
                allowed_sustained=True,
                allowed_burst=True,
                remaining_sustained=config.sustained_limit,
                remaining_burst=config.burst_limit,
                reset_sustained=sustained_reset,
                reset_burst=burst_reset,
                fail_open=True,
            )

        decision = RateLimitDecision(
            limit_sustained=config.sustained_limit,
            limit_burst=config.burst_limit,
            allowed_sustained=sustained_count <= config.sustained_limit,
            allowed_burst=burst_count <= config.burst_limit,
            remaining_sustained=max(0, config.sustained_limit - sustained_count),
            remaining_burst=max(0, config.burst_limit - burst_count),
            reset_sustained=sustained_reset,
            reset_burst=burst_reset,
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded subject=%s plan=%s window=%s sustained=%s/%s burst=%s/%s",
                subject_id,
                Plan.parse(plan).value,
                decision.exceeded_window.value,
                sustained_count,
                config.sustained_limit,
                burst_count,
                config.burst_limit,
            )
        return decision

    def status(self, subject_id: str, plan: Plan | str) -> RateLimitDecision:
        """Read current usage without counting an attempt."""
        config = self.config_for(plan)
        now = self._clock()
        sustained_start = window_start(now, config.sustained_window)
        burst_start = window_start(now, config.burst_window)
        try:
            sustained_count = self._counters.get_int(
                counter_key(subject_id, WindowKind.SUSTAINED, sustained_start)
            )
            burst_count = self._counters.get_int(counter_key(subject_id, WindowKind.BURST, burst_start))
            fail_open = False
        except StorageTransient:
            logger.exception("rate_limit_status_unavailable subject=%s", subject_id)
            sustained_count = burst_count = 0
            fail_open = True
        return RateLimitDecision(
            limit_sustained=config.sustained_limit,
            limit_burst=config.burst_limit,
            allowed_sustained=sustained_count <= config.sustained_limit,
            allowed_burst=burst_count <= config.burst_limit,
            remaining_sustained=max(0, config.sustained_limit - sustained_count),
            remaining_burst=max(0, config.burst_limit - burst_count),
            reset_sustained=sustained_start + config.sustained_window,
            reset_burst=burst_start + config.burst_window,
            fail_open=fail_open,
        )
