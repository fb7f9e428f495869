"""Test rate limit recovery and per-provider circuit breaker."""
import pytest
from datetime import datetime, timedelta, timezone

import httpx

from tracker_core.integrations.errors import (
    CircuitOpenError,
    MaxRetriesExceeded,
    RateLimitExceeded,
)
from tracker_core.resilience import CircuitState, RateLimitRecovery, RecoveryConfig


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_recovery(**config):
    clock = FakeClock()
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    recovery = RateLimitRecovery(
        RecoveryConfig(**config), clock=clock, sleep=fake_sleep, jitter=lambda: 0.0
    )
    return recovery, clock, sleeps


def flaky(failures, error_factory=lambda: RateLimitExceeded()):
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) <= failures:
            raise error_factory()
        return "ok"

    return operation, calls


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_retries_rate_limit_then_succeeds():
    recovery, _, sleeps = make_recovery(circuit_breaker_threshold=10)
    operation, calls = flaky(2)

    assert await recovery.execute_with_recovery("linear", operation) == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]
    assert recovery.get_state("linear").failure_count == 0


@pytest.mark.asyncio
async def test_retry_after_is_a_floor():
    recovery, _, sleeps = make_recovery(circuit_breaker_threshold=10)
    operation, _ = flaky(1, lambda: RateLimitExceeded(retry_after_ms=4500))

    await recovery.execute_with_recovery("linear", operation)
    assert sleeps == [4.5]


@pytest.mark.asyncio
async def test_max_retries_exceeded():
    recovery, _, sleeps = make_recovery(circuit_breaker_threshold=100)
    operation, calls = flaky(100)

    with pytest.raises(MaxRetriesExceeded) as exc_info:
        await recovery.execute_with_recovery("linear", operation, max_retries=2)
    assert len(calls) == 3
    assert len(sleeps) == 2
    assert isinstance(exc_info.value.last_error, RateLimitExceeded)


@pytest.mark.asyncio
async def test_other_errors_propagate_immediately():
    recovery, _, sleeps = make_recovery()
    operation, calls = flaky(1, lambda: KeyError("boom"))

    with pytest.raises(KeyError):
        await recovery.execute_with_recovery("linear", operation)
    assert len(calls) == 1
    assert sleeps == []
    assert recovery.get_state("linear").failure_count == 1


@pytest.mark.asyncio
async def test_sync_operation_supported():
    recovery, _, _ = make_recovery()
    assert await recovery.execute_with_recovery("asana", lambda: 42) == 42


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_circuit_opens_after_threshold():
    recovery, _, _ = make_recovery(circuit_breaker_threshold=3)
    operation, calls = flaky(100)

    with pytest.raises(CircuitOpenError):
        await recovery.execute_with_recovery("trello", operation)
    assert len(calls) == 3
    assert recovery.circuit_state("trello") is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await recovery.execute_with_recovery("trello", operation)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_circuit_half_open_then_closes_on_success():
    recovery, clock, _ = make_recovery(circuit_breaker_threshold=1, circuit_breaker_timeout_ms=1000)
    failing, _ = flaky(100)
    with pytest.raises(CircuitOpenError):
        await recovery.execute_with_recovery("notion", failing)

    clock.now += 0.5
    assert recovery.circuit_state("notion") is CircuitState.OPEN
    clock.now += 0.5
    assert recovery.circuit_state("notion") is CircuitState.HALF_OPEN

    assert await recovery.execute_with_recovery("notion", lambda: "back") == "back"
    assert recovery.circuit_state("notion") is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failure_while_half_open_reopens():
    recovery, clock, _ = make_recovery(circuit_breaker_threshold=5, circuit_breaker_timeout_ms=1000)
    state = recovery.get_state("monday")
    state.circuit_state = CircuitState.OPEN
    state.opened_at = clock.now
    clock.now += 2
    assert recovery.circuit_state("monday") is CircuitState.HALF_OPEN

    operation, calls = flaky(1)
    with pytest.raises(CircuitOpenError):
        await recovery.execute_with_recovery("monday", operation)
    assert len(calls) == 1
    assert recovery.circuit_state("monday") is CircuitState.OPEN


def test_update_rate_limit_state_closes_with_headroom():
    recovery, _, _ = make_recovery()
    state = recovery.get_state("linear")
    state.circuit_state = CircuitState.OPEN
    state.failure_count = 5
    reset_at = datetime.now(timezone.utc) + timedelta(seconds=30)

    recovery.update_rate_limit_state("linear", remaining=400, limit=1000, reset_at=reset_at)
    assert state.circuit_state is CircuitState.OPEN
    assert state.remaining == 400

    recovery.update_rate_limit_state("linear", remaining=600, limit=1000, reset_at=reset_at)
    assert state.circuit_state is CircuitState.CLOSED
    assert state.failure_count == 0
    assert state.to_dict()["circuit_state"] == "closed"


def test_reset_circuit():
    recovery, _, _ = make_recovery()
    state = recovery.get_state("clickup")
    state.circuit_state = CircuitState.OPEN
    state.failure_count = 9
    recovery.reset_circuit("clickup")
    assert state.circuit_state is CircuitState.CLOSED
    assert state.failure_count == 0


# ---------------------------------------------------------------------------
# Classification and backoff
# ---------------------------------------------------------------------------

def test_is_rate_limit_error():
    request = httpx.Request("GET", "https://api.example.com")
    http_429 = httpx.HTTPStatusError(
        "too many", request=request, response=httpx.Response(429, request=request)
    )
    http_500 = httpx.HTTPStatusError(
        "server", request=request, response=httpx.Response(500, request=request)
    )

    assert RateLimitRecovery.is_rate_limit_error(RateLimitExceeded())
    assert RateLimitRecovery.is_rate_limit_error(http_429)
    assert not RateLimitRecovery.is_rate_limit_error(http_500)
    assert RateLimitRecovery.is_rate_limit_error(RuntimeError("Too Many Requests"))
    assert not RateLimitRecovery.is_rate_limit_error(ValueError("bad input"))


def test_retry_after_from_http_error():
    request = httpx.Request("GET", "https://api.example.com")
    error = httpx.HTTPStatusError(
        "too many",
        request=request,
        response=httpx.Response(429, headers={"Retry-After": "3"}, request=request),
    )
    assert RateLimitRecovery.retry_after_ms(error) == 3000
    assert RateLimitRecovery.retry_after_ms(ValueError()) is None


def test_backoff_capped_with_jitter():
    recovery = RateLimitRecovery(RecoveryConfig(max_delay_ms=10_000), jitter=lambda: 1.0)
    assert recovery.calculate_backoff_delay(0) == 1300
    assert recovery.calculate_backoff_delay(20) == 13_000
    assert recovery.calculate_backoff_delay(0, retry_after_ms=5000) == 6500
