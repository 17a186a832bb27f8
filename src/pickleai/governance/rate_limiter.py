"""Per-user rate limiting with violation cooldowns."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable

from loguru import logger

from pickleai.config import SecurityConfig
from pickleai.types import RateLimitState, SecurityResult


class RateLimiter:
    """Holds one ``RateLimitState`` per user.

    ``consume`` does the cooldown check, window rollover, counter increment
    and quota comparison without suspending, so two interleaved requests from
    the same user can never both pass a borderline quota on the event loop.
    """

    def __init__(
        self,
        config: SecurityConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or SecurityConfig()
        self._clock = clock
        self._states: dict[str, RateLimitState] = {}

    def consume(self, user_id: str) -> SecurityResult:
        now = self._clock()
        state = self._states.get(user_id)
        if state is None:
            state = RateLimitState(user_id=user_id, minute_window_start=now, day_window_start=now)
            self._states[user_id] = state

        if state.cooldown_until is not None and now < state.cooldown_until:
            return SecurityResult(
                allowed=False,
                reason="Rate limited due to previous violations",
                rate_limited=True,
                cooldown_remaining=math.ceil(state.cooldown_until - now),
            )

        if now - state.minute_window_start >= self.config.minute_window_seconds:
            state.minute_window_start = now
            state.requests_this_window = 0
        if now - state.day_window_start >= self.config.day_window_seconds:
            state.day_window_start = now
            state.requests_today = 0

        state.requests_this_window += 1
        state.requests_today += 1

        if state.requests_this_window > self.config.per_user_minute:
            return SecurityResult(allowed=False, reason="Too many requests per minute", rate_limited=True)
        if state.requests_today > self.config.per_user_day:
            return SecurityResult(allowed=False, reason="Daily request limit exceeded", rate_limited=True)
        return SecurityResult(allowed=True)

    def record_violation(self, user_id: str) -> None:
        now = self._clock()
        state = self._states.get(user_id)
        if state is None:
            state = RateLimitState(user_id=user_id, minute_window_start=now, day_window_start=now)
            self._states[user_id] = state
        state.last_violation_at = now
        state.cooldown_until = now + self.config.cooldown_seconds
        logger.info("Content violation for {}; cooldown {}s", user_id, self.config.cooldown_seconds)

    def sweep(self) -> int:
        """Drop states idle for longer than the retention period."""
        now = self._clock()
        retention = self.config.state_retention_seconds
        stale = [
            uid for uid, s in self._states.items()
            if now - (s.last_violation_at if s.last_violation_at is not None else s.day_window_start) > retention
        ]
        for uid in stale:
            del self._states[uid]
        if stale:
            logger.debug("Swept {} rate-limit records", len(stale))
        return len(stale)

    async def run_maintenance(self, interval: float | None = None) -> None:
        """Sweep forever; cancel the task to stop."""
        interval = self.config.sweep_interval_seconds if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def get(self, user_id: str) -> RateLimitState | None:
        state = self._states.get(user_id)
        return state.model_copy() if state else None

    def reset(self, user_id: str) -> None:
        self._states.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._states)
