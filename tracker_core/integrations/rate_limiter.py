"""
Tracker Core Rate Limiter: Token Bucket Admission Control.

One limiter per (organization, provider) pair:
- Continuous refill proportional to elapsed time, capped at the burst size
- Non-blocking try_acquire() and queuing acquire() with FIFO fairness
- Queue drained by a single scheduled wake-up, re-armed after each drain
- reset() rejects every queued waiter (hard cutover, no graceful drain)

ComplexityTracker is the companion budget for point-cost GraphQL APIs.
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional
import asyncio
import logging
import math
import time

from tracker_core.integrations.errors import (
    ConfigurationError,
    QueueFull,
    RateLimiterReset,
    RateLimitExceeded,
)
from tracker_core.integrations.types import provider_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RateLimiterConfig:
    """Token bucket parameters."""
    max_requests: int               # Requests granted per window
    window_ms: int                  # Window length in milliseconds
    burst_size: Optional[int] = None  # Bucket capacity, defaults to max_requests
    queue_excess: bool = False      # Queue acquire() calls instead of raising
    max_queue_size: int = 1000

    def __post_init__(self):
        if self.max_requests <= 0:
            raise ConfigurationError(f"max_requests must be positive, got {self.max_requests}")
        if self.window_ms <= 0:
            raise ConfigurationError(f"window_ms must be positive, got {self.window_ms}")
        if self.burst_size is not None and self.burst_size <= 0:
            raise ConfigurationError(f"burst_size must be positive, got {self.burst_size}")
        if self.max_queue_size < 0:
            raise ConfigurationError(f"max_queue_size must be >= 0, got {self.max_queue_size}")

    @property
    def burst(self) -> int:
        return self.burst_size if self.burst_size is not None else self.max_requests

    @property
    def ms_per_token(self) -> float:
        return self.window_ms / self.max_requests


# Published API limits per tracker (requests / window).
TRACKER_RATE_LIMITS: Mapping[str, RateLimiterConfig] = MappingProxyType({
    "linear": RateLimiterConfig(max_requests=1500, window_ms=60_000),
    "trello": RateLimiterConfig(max_requests=100, window_ms=10_000),
    "asana": RateLimiterConfig(max_requests=1500, window_ms=60_000),
    "monday": RateLimiterConfig(max_requests=5000, window_ms=60_000),
    "clickup": RateLimiterConfig(max_requests=100, window_ms=60_000),  # Free tier
    "notion": RateLimiterConfig(max_requests=3, window_ms=1_000),
    "wrike": RateLimiterConfig(max_requests=400, window_ms=60_000),
    "shortcut": RateLimiterConfig(max_requests=200, window_ms=60_000),
    "basecamp": RateLimiterConfig(max_requests=50, window_ms=10_000),
    "jira": RateLimiterConfig(max_requests=100, window_ms=60_000),
})

# Complexity points per minute for point-cost APIs.
TRACKER_COMPLEXITY_LIMITS: Mapping[str, int] = MappingProxyType({
    "monday": 10_000_000,
})


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Token bucket rate limiter with optional FIFO request queuing.

    Usage::

        limiter = RateLimiter.for_tracker("linear")
        await limiter.acquire()          # waits in line if the bucket is empty
        if limiter.try_acquire():        # never waits
            ...
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ):
        self.config = config
        self.name = name
        self._clock = clock
        self._tokens = float(config.burst)
        self._last_refill = clock()
        self._queue: deque[asyncio.Future] = deque()
        self._wakeup: Optional[asyncio.TimerHandle] = None

    @classmethod
    def for_tracker(
        cls,
        provider: Any,
        presets: Mapping[str, RateLimiterConfig] = TRACKER_RATE_LIMITS,
        *,
        queue_excess: bool = True,
        max_queue_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RateLimiter":
        """Build a queuing limiter from the preset table. Unknown provider is a config error."""
        key = provider_name(provider)
        preset = presets.get(key)
        if preset is None:
            raise ConfigurationError(f"Unknown tracker: {key}", key)
        config = replace(preset, queue_excess=queue_excess, max_queue_size=max_queue_size)
        return cls(config, clock=clock, name=key)

    # --- Bucket accounting ---

    def _refill(self) -> None:
        now = self._clock()
        elapsed_ms = (now - self._last_refill) * 1000.0
        if elapsed_ms > 0:
            added = elapsed_ms / self.config.window_ms * self.config.max_requests
            self._tokens = min(self._tokens + added, float(self.config.burst))
            self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a token if one is available. Never waits, never mutates on failure."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        """
        Take a token, waiting in FIFO order when queuing is enabled.

        Raises RateLimitExceeded when queuing is disabled, QueueFull when the
        queue is at capacity, RateLimiterReset if reset() runs while waiting.
        """
        self._refill()
        if not self._queue and self._tokens >= 1:
            self._tokens -= 1
            return

        provider = self.name or None
        if not self.config.queue_excess:
            retry_after = self.get_time_until_next_token()
            logger.warning(
                "Rate limit exceeded",
                extra={"provider": provider, "retry_after_ms": retry_after},
            )
            raise RateLimitExceeded("Rate limit exceeded", retry_after, provider)

        if len(self._queue) >= self.config.max_queue_size:
            retry_after = self.get_time_until_next_token()
            logger.warning(
                "Rate limit queue full",
                extra={"provider": provider, "queue_size": len(self._queue)},
            )
            raise QueueFull("Rate limit queue full", retry_after, provider)

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._queue.append(waiter)
        self._schedule_drain(loop)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter in self._queue:
                self._queue.remove(waiter)
            elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Granted and cancelled in the same loop step: hand the token back.
                self._tokens = min(self._tokens + 1, float(self.config.burst))
            raise

    def _schedule_drain(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._wakeup is not None or not self._queue:
            return
        delay_ms = self.get_time_until_next_token()
        self._wakeup = loop.call_later(delay_ms / 1000.0, self._drain)

    def _drain(self) -> None:
        self._wakeup = None
        self._refill()
        while self._queue:
            if self._queue[0].done():
                self._queue.popleft()
                continue
            if self._tokens < 1:
                break
            waiter = self._queue.popleft()
            self._tokens -= 1
            waiter.set_result(None)
        if self._queue:
            self._schedule_drain(asyncio.get_running_loop())

    # --- Introspection ---

    def get_time_until_next_token(self) -> int:
        """Milliseconds until one whole token is available (0 if available now)."""
        self._refill()
        if self._tokens >= 1:
            return 0
        return math.ceil((1 - self._tokens) * self.config.ms_per_token)

    def get_remaining_tokens(self) -> int:
        self._refill()
        return math.floor(self._tokens)

    def get_queue_size(self) -> int:
        return len(self._queue)

    def reset(self) -> None:
        """Restore a full bucket and reject every queued waiter."""
        self._tokens = float(self.config.burst)
        self._last_refill = self._clock()
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None

        rejected = 0
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(RateLimiterReset(provider=self.name or None))
                rejected += 1
        if rejected:
            logger.warning(
                "Rate limiter reset rejected queued requests",
                extra={"provider": self.name or None, "rejected": rejected},
            )


# ---------------------------------------------------------------------------
# ComplexityTracker
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ComplexityTracker:
    """
    Fixed-window point budget for GraphQL complexity limits (Linear, Monday).

    Resets lazily on read/write once the window passes; there is no timer.
    Independent of RateLimiter: a call can fit the request quota and still
    exceed the complexity budget, so adapters check both.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if limit <= 0:
            raise ConfigurationError(f"Complexity limit must be positive, got {limit}")
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._remaining = limit
        self._reset_at = clock() + self.window

    @classmethod
    def for_tracker(
        cls,
        provider: Any,
        limits: Mapping[str, int] = TRACKER_COMPLEXITY_LIMITS,
        window_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "ComplexityTracker":
        key = provider_name(provider)
        if key not in limits:
            raise ConfigurationError(f"No complexity limit configured for {key}", key)
        return cls(limits[key], window_seconds=window_seconds, clock=clock)

    def _maybe_reset(self) -> None:
        now = self._clock()
        if now >= self._reset_at:
            self._remaining = self.limit
            self._reset_at = now + self.window

    def can_execute(self, cost: int) -> bool:
        self._maybe_reset()
        return self._remaining >= cost

    def record_usage(self, cost: int) -> None:
        if cost < 0:
            raise ValueError(f"Complexity cost must be >= 0, got {cost}")
        self._maybe_reset()
        self._remaining = max(0, self._remaining - cost)

    def update_from_response(self, remaining: int, reset_at: datetime) -> None:
        """Adopt the server-reported budget (e.g. from rate-limit headers)."""
        if reset_at.tzinfo is None:
            reset_at = reset_at.replace(tzinfo=timezone.utc)
        self._remaining = max(0, min(self.limit, remaining))
        self._reset_at = reset_at

    def get_remaining(self) -> int:
        self._maybe_reset()
        return self._remaining

    def get_reset_at(self) -> datetime:
        self._maybe_reset()
        return self._reset_at
