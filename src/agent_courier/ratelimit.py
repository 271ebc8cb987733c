"""Outbound rate limiting for chat API calls.

Enforces a sustained per-minute cap and a short burst cap using two
sliding windows of admission timestamps. Every outbound gateway call
awaits ``throttle()`` first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from agent_courier.clock import SYSTEM_CLOCK, Clock
from agent_courier.errors import ConfigurationError

logger = logging.getLogger("agent_courier.ratelimit")

_MINUTE_WINDOW_S = 60.0
_BURST_WINDOW_S = 1.0
_SAFETY_MARGIN_S = 0.1


class RateLimiter:
    """Sliding-window rate limiter with burst protection.

    Waiters are admitted in arrival order. A timestamp is recorded when
    permission is granted, not when ``throttle()`` is entered.

    Args:
        max_per_minute: Maximum calls in any 60-second window (default 20).
        burst_size: Maximum calls in any 1-second window (default 5).
        clock: Time source (defaults to the system clock).

    Raises:
        ConfigurationError: If either limit is not a positive integer.
    """

    def __init__(
        self,
        max_per_minute: int = 20,
        burst_size: int = 5,
        *,
        clock: Clock | None = None,
    ) -> None:
        if max_per_minute < 1:
            raise ConfigurationError(f"max_per_minute must be at least 1 (got {max_per_minute})")
        if burst_size < 1:
            raise ConfigurationError(f"burst_size must be at least 1 (got {burst_size})")
        self._max_per_minute = max_per_minute
        self._burst_size = burst_size
        self._clock = clock or SYSTEM_CLOCK
        self._calls: deque[float] = deque()
        self._burst_calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def max_per_minute(self) -> int:
        return self._max_per_minute

    @property
    def burst_size(self) -> int:
        return self._burst_size

    @property
    def calls(self) -> list[float]:
        """Admission timestamps inside the minute window (as of the last prune)."""
        return list(self._calls)

    @property
    def burst_calls(self) -> list[float]:
        """Admission timestamps inside the burst window (as of the last prune)."""
        return list(self._burst_calls)

    async def throttle(self) -> None:
        """Wait until one outbound call is allowed, then record it."""
        async with self._lock:
            while True:
                now = self._clock.now()
                self._prune(now)
                wait = self._wait_time(now)
                if wait <= 0:
                    break
                logger.debug(
                    "Rate limit reached, waiting %.2fs (minute=%d/%d, burst=%d/%d)",
                    wait,
                    len(self._calls),
                    self._max_per_minute,
                    len(self._burst_calls),
                    self._burst_size,
                )
                await self._clock.sleep(wait)

            self._calls.append(now)
            self._burst_calls.append(now)

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= _MINUTE_WINDOW_S:
            self._calls.popleft()
        while self._burst_calls and now - self._burst_calls[0] >= _BURST_WINDOW_S:
            self._burst_calls.popleft()

    def _wait_time(self, now: float) -> float:
        """Seconds to wait before the next admission, or 0 if allowed now."""
        if len(self._burst_calls) >= self._burst_size:
            return _BURST_WINDOW_S - (now - self._burst_calls[0]) + _SAFETY_MARGIN_S
        if len(self._calls) >= self._max_per_minute:
            return _MINUTE_WINDOW_S - (now - self._calls[0]) + _SAFETY_MARGIN_S
        return 0.0

    def reset(self) -> None:
        """Forget all recorded calls."""
        self._calls.clear()
        self._burst_calls.clear()
