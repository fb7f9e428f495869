"""
Tracker Core Rate Limit Recovery: Resilience for Provider Calls.

Protects against:
- Provider rate limits (retry with exponential backoff plus jitter)
- Server-directed waits (Retry-After honoured as a floor)
- Cascading failures (per-provider circuit breaker)
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import asyncio
import inspect
import logging
import random
import time

import httpx

from tracker_core.integrations.adapter_base import parse_retry_after
from tracker_core.integrations.errors import (
    CircuitOpenError,
    MaxRetriesExceeded,
    RateLimitExceeded,
)
from tracker_core.integrations.types import provider_name

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing: reject calls
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class RecoveryConfig:
    base_delay_ms: int = 1000
    max_delay_ms: int = 300_000   # 5 minutes
    max_retries: int = 5
    jitter_factor: float = 0.3    # Max jitter as a fraction of the delay
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_ms: int = 60_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderRateLimitState:
    """Last known quota and circuit state for one provider."""
    provider: str
    remaining: int = 1000
    limit: int = 1000
    reset_at: datetime = field(default_factory=lambda: _utcnow() + timedelta(minutes=1))
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: Optional[datetime] = None
    opened_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "circuit_state": self.circuit_state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


class RateLimitRecovery:
    """
    Retries rate-limited provider operations and trips a per-provider circuit.

    Usage::

        recovery = RateLimitRecovery()
        tasks = await recovery.execute_with_recovery(
            "linear", lambda: adapter.request(AdapterRequest("GET", "/issues"))
        )
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.config = config or RecoveryConfig()
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._states: dict[str, ProviderRateLimitState] = {}

    # --- State ---

    def get_state(self, provider: Any) -> ProviderRateLimitState:
        key = provider_name(provider)
        if key not in self._states:
            self._states[key] = ProviderRateLimitState(provider=key)
        return self._states[key]

    def circuit_state(self, provider: Any) -> CircuitState:
        state = self.get_state(provider)
        if state.circuit_state is CircuitState.OPEN and state.opened_at is not None:
            elapsed_ms = (self._clock() - state.opened_at) * 1000
            if elapsed_ms >= self.config.circuit_breaker_timeout_ms:
                state.circuit_state = CircuitState.HALF_OPEN
                logger.info("Circuit half-open", extra={"provider": state.provider})
        return state.circuit_state

    def _open(self, state: ProviderRateLimitState) -> None:
        state.circuit_state = CircuitState.OPEN
        state.opened_at = self._clock()
        logger.warning(
            "Circuit opened",
            extra={"provider": state.provider, "failure_count": state.failure_count},
        )

    def _record_failure(self, state: ProviderRateLimitState) -> None:
        state.failure_count += 1
        state.last_failure_at = _utcnow()
        if (
            state.circuit_state is CircuitState.HALF_OPEN
            or state.failure_count >= self.config.circuit_breaker_threshold
        ):
            self._open(state)

    def reset_circuit(self, provider: Any) -> None:
        state = self.get_state(provider)
        if state.circuit_state is not CircuitState.CLOSED:
            logger.info("Circuit closed", extra={"provider": state.provider})
        state.circuit_state = CircuitState.CLOSED
        state.failure_count = 0
        state.opened_at = None

    def update_rate_limit_state(
        self, provider: Any, remaining: int, limit: int, reset_at: datetime
    ) -> None:
        """Adopt quota reported by the provider. Closes the circuit above 50% headroom."""
        state = self.get_state(provider)
        state.remaining = remaining
        state.limit = limit
        state.reset_at = reset_at
        if remaining > limit * 0.5:
            self.reset_circuit(provider)

    # --- Classification ---

    @staticmethod
    def is_rate_limit_error(error: BaseException) -> bool:
        if isinstance(error, RateLimitExceeded):
            return True
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code == 429
        if getattr(error, "status_code", None) == 429:
            return True
        message = str(error).lower()
        return (
            "ratelimit" in type(error).__name__.lower()
            or "rate limit" in message
            or "too many requests" in message
        )

    @staticmethod
    def retry_after_ms(error: BaseException) -> Optional[int]:
        if isinstance(error, RateLimitExceeded):
            return error.retry_after_ms or None
        if isinstance(error, httpx.HTTPStatusError):
            return parse_retry_after(error.response.headers.get("retry-after")) or None
        return None

    def calculate_backoff_delay(self, attempt: int, retry_after_ms: Optional[int] = None) -> int:
        """Exponential delay capped at max_delay_ms, floored at Retry-After, plus jitter."""
        delay = min(self.config.base_delay_ms * 2 ** attempt, self.config.max_delay_ms)
        delay = max(delay, retry_after_ms or 0)
        return int(delay + delay * self.config.jitter_factor * self._jitter())

    # --- Execution ---

    async def execute_with_recovery(
        self,
        provider: Any,
        operation: Callable[[], Any],
        max_retries: Optional[int] = None,
    ) -> Any:
        """
        Run ``operation`` retrying rate-limit failures with backoff.

        Other exceptions count toward the circuit and propagate immediately.
        Raises CircuitOpenError when the circuit is (or becomes) open and
        MaxRetriesExceeded once every attempt was rate limited.
        """
        state = self.get_state(provider)
        key = state.provider
        retries = self.config.max_retries if max_retries is None else max_retries

        if self.circuit_state(key) is CircuitState.OPEN:
            raise CircuitOpenError(f"Circuit breaker open for {key}", key)

        last_error: Optional[BaseException] = None
        for attempt in range(retries + 1):
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                if not self.is_rate_limit_error(exc):
                    self._record_failure(state)
                    raise
                last_error = exc
                self._record_failure(state)
                if state.circuit_state is CircuitState.OPEN:
                    raise CircuitOpenError(f"Circuit breaker open for {key}", key) from exc
                if attempt < retries:
                    delay_ms = self.calculate_backoff_delay(attempt, self.retry_after_ms(exc))
                    logger.warning(
                        "Rate limited, backing off",
                        extra={"provider": key, "attempt": attempt + 1, "delay_ms": delay_ms},
                    )
                    await self._sleep(delay_ms / 1000)
            else:
                if state.failure_count or state.circuit_state is not CircuitState.CLOSED:
                    self.reset_circuit(key)
                return result

        raise MaxRetriesExceeded(
            f"Max retries ({retries}) exceeded for {key}", key, last_error
        ) from last_error
