"""
Tracker Core Adapter Framework.

Every tracker integration (Linear, Trello, Asana, ...) inherits from
TrackerAdapter. Provides:
- Token bucket admission before every outbound call
- Complexity budget checks for point-cost GraphQL APIs
- HTTP 429 surfaced as RateLimitExceeded with the server's Retry-After
- Retry with capped exponential backoff on 5xx and transport errors
- Health tracking (latency, errors)
- Record translation through FieldMapper
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional
import asyncio
import logging
import time

import httpx

from tracker_core.integrations.errors import ConfigurationError, RateLimitExceeded
from tracker_core.integrations.field_mapper import (
    FieldMapper,
    FieldMappingConfig,
    TransformContext,
)
from tracker_core.integrations.rate_limiter import (
    TRACKER_COMPLEXITY_LIMITS,
    ComplexityTracker,
    RateLimiter,
)
from tracker_core.integrations.types import RateLimitStatus, TrackerTask, provider_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass
class TrackerCredentials:
    """Organization-scoped credentials for one tracker integration."""
    organization_id: str
    integration_id: str = ""
    access_token: str | None = None
    api_key: str | None = None
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Request / Response envelope
# ---------------------------------------------------------------------------

@dataclass
class AdapterRequest:
    """Standardized outbound request."""
    method: str  # GET, POST, PUT, PATCH, DELETE
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    complexity_cost: int = 0  # GraphQL points, 0 for REST


@dataclass
class AdapterResponse:
    """Standardized inbound response."""
    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0
    provider: str = ""
    organization_id: str = ""
    error: str | None = None
    retries: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


# ---------------------------------------------------------------------------
# Health tracking
# ---------------------------------------------------------------------------

@dataclass
class IntegrationHealth:
    """Health metrics for an adapter."""
    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited_requests: int = 0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "successful": self.successful_requests,
            "failed": self.failed_requests,
            "rate_limited": self.rate_limited_requests,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "p95_latency_ms": round(self.p95_latency_ms, 1),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


def parse_retry_after(value: str | None, default_ms: int = 0) -> int:
    """Retry-After header (delta seconds or HTTP date) to milliseconds."""
    if not value:
        return default_ms
    try:
        return max(0, int(float(value) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default_ms
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds() * 1000))


# ---------------------------------------------------------------------------
# TrackerAdapter
# ---------------------------------------------------------------------------

class TrackerAdapter(ABC):
    """
    Base class for all tracker API adapters.

    Subclasses must set:
        provider: str       : tracker identifier (key into the rate-limit presets)
        base_url: str       : API root URL
        task_mappings       : FieldMappingConfig rules for tasks
    and implement test_connection().
    """

    provider: str = ""
    base_url: str = ""
    task_mappings: list[FieldMappingConfig] = []

    # Retry defaults
    MAX_RETRIES: int = 3
    BACKOFF_BASE_MS: int = 1000
    BACKOFF_MAX_MS: int = 30_000

    def __init__(
        self,
        credentials: TrackerCredentials,
        rate_limiter: RateLimiter | None = None,
        complexity_tracker: ComplexityTracker | None = None,
        field_mapper: FieldMapper | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.credentials = credentials
        self.rate_limiter = rate_limiter or RateLimiter.for_tracker(self.provider)
        if complexity_tracker is None and provider_name(self.provider) in TRACKER_COMPLEXITY_LIMITS:
            complexity_tracker = ComplexityTracker.for_tracker(self.provider)
        self.complexity_tracker = complexity_tracker
        self.field_mapper = field_mapper or FieldMapper()
        self._client = http_client
        self._sleep = sleep
        self._health = IntegrationHealth(provider=provider_name(self.provider))
        self._latencies: list[float] = []

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check that credentials work against the live API."""

    # --- Auth ---

    def is_token_expired(self, buffer_seconds: float = 300) -> bool:
        """True when the token expires within ``buffer_seconds``. No expiry means never."""
        expires_at = self.credentials.expires_at
        if expires_at is None:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires_at - timedelta(seconds=buffer_seconds)

    def get_authorization_header(self) -> str:
        creds = self.credentials
        if creds.access_token:
            return f"{creds.token_type or 'Bearer'} {creds.access_token}"
        if creds.api_key:
            return creds.api_key
        raise ConfigurationError(
            "No valid authentication credentials available", provider_name(self.provider)
        )

    def update_credentials(self, credentials: TrackerCredentials) -> None:
        self.credentials = credentials

    # --- Health ---

    def _update_health(self, latency_ms: float, success: bool, error: str | None = None) -> None:
        self._health.total_requests += 1
        self._latencies.append(latency_ms)
        if len(self._latencies) > 1000:
            self._latencies = self._latencies[-500:]

        now = datetime.now(timezone.utc)
        if success:
            self._health.successful_requests += 1
            self._health.last_success = now
        else:
            self._health.failed_requests += 1
            self._health.last_failure = now
            self._health.last_error = error

        self._health.avg_latency_ms = sum(self._latencies) / len(self._latencies)
        sorted_lats = sorted(self._latencies)
        p95_idx = int(len(sorted_lats) * 0.95)
        self._health.p95_latency_ms = sorted_lats[min(p95_idx, len(sorted_lats) - 1)]

    def get_health(self) -> IntegrationHealth:
        return self._health

    # --- Rate limits ---

    def calculate_backoff_delay(self, attempt: int, base_delay_ms: int | None = None) -> int:
        base = self.BACKOFF_BASE_MS if base_delay_ms is None else base_delay_ms
        return min(base * 2 ** attempt, self.BACKOFF_MAX_MS)

    def get_rate_limit_status(self) -> RateLimitStatus:
        wait_ms = self.rate_limiter.get_time_until_next_token()
        return RateLimitStatus(
            remaining=self.rate_limiter.get_remaining_tokens(),
            limit=self.rate_limiter.config.max_requests,
            reset_at=datetime.now(timezone.utc) + timedelta(milliseconds=wait_ms),
            complexity_remaining=(
                self.complexity_tracker.get_remaining() if self.complexity_tracker else None
            ),
        )

    def _check_complexity(self, cost: int) -> None:
        if not cost or self.complexity_tracker is None:
            return
        if not self.complexity_tracker.can_execute(cost):
            reset_at = self.complexity_tracker.get_reset_at()
            retry_after = (reset_at - datetime.now(timezone.utc)).total_seconds() * 1000
            logger.warning(
                "Complexity budget exhausted",
                extra={"provider": self._health.provider, "cost": cost},
            )
            raise RateLimitExceeded(
                "Complexity budget exhausted", max(0, int(retry_after)), self._health.provider
            )

    # --- Core request ---

    async def request(self, req: AdapterRequest) -> AdapterResponse:
        """
        Execute a request through the adapter pipeline:
        Complexity budget -> Rate limit -> Auth -> Retry w/ Backoff -> Health

        Raises RateLimitExceeded on HTTP 429 so the recovery layer can back off.
        """
        self._check_complexity(req.complexity_cost)
        if self._client is not None:
            return await self._execute(self._client, req)
        async with httpx.AsyncClient() as client:
            return await self._execute(client, req)

    async def _execute(self, client: httpx.AsyncClient, req: AdapterRequest) -> AdapterResponse:
        provider = self._health.provider
        url = f"{self.base_url.rstrip('/')}/{req.path.lstrip('/')}"
        headers = {"Authorization": self.get_authorization_header(), **req.headers}

        last_error: str | None = None
        latency = 0.0

        for attempt in range(self.MAX_RETRIES + 1):
            await self.rate_limiter.acquire()
            start = time.monotonic()
            try:
                resp = await client.request(
                    method=req.method,
                    url=url,
                    params=req.params or None,
                    json=req.body,
                    headers=headers,
                    timeout=req.timeout,
                )
            except httpx.TransportError as exc:
                latency = (time.monotonic() - start) * 1000
                last_error = str(exc) or type(exc).__name__
            else:
                latency = (time.monotonic() - start) * 1000

                if resp.status_code == 429:
                    retry_after = parse_retry_after(resp.headers.get("retry-after"))
                    self._health.rate_limited_requests += 1
                    self._update_health(latency, False, "HTTP 429")
                    logger.warning(
                        "Provider rate limit hit",
                        extra={"provider": provider, "retry_after_ms": retry_after},
                    )
                    raise RateLimitExceeded(f"{provider} API rate limit exceeded", retry_after, provider)

                if resp.status_code < 500:
                    if req.complexity_cost and self.complexity_tracker is not None:
                        self.complexity_tracker.record_usage(req.complexity_cost)
                    self._update_health(latency, resp.status_code < 400)
                    is_json = resp.headers.get("content-type", "").startswith("application/json")
                    return AdapterResponse(
                        status_code=resp.status_code,
                        data=resp.json() if is_json else resp.text,
                        headers=dict(resp.headers),
                        latency_ms=latency,
                        provider=provider,
                        organization_id=self.credentials.organization_id,
                        retries=attempt,
                    )

                # 5xx: retry
                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"

            if attempt < self.MAX_RETRIES:
                delay_ms = self.calculate_backoff_delay(attempt)
                logger.debug(
                    "Retrying provider request",
                    extra={"provider": provider, "attempt": attempt + 1, "delay_ms": delay_ms},
                )
                await self._sleep(delay_ms / 1000)

        # All retries exhausted
        self._update_health(latency, False, last_error)
        logger.error(
            "Provider request failed after retries",
            extra={"provider": provider, "retries": self.MAX_RETRIES, "error": last_error},
        )
        return AdapterResponse(
            status_code=502,
            error=last_error,
            provider=provider,
            organization_id=self.credentials.organization_id,
            retries=self.MAX_RETRIES,
        )

    # --- Record translation ---

    def to_universal_task(
        self, record: dict[str, Any], context: Optional[TransformContext] = None
    ) -> TrackerTask:
        data = self.field_mapper.map_to_universal(record, self.provider, self.task_mappings, context)
        return TrackerTask.model_validate(data)

    def from_universal_task(
        self, task: TrackerTask | dict[str, Any], context: Optional[TransformContext] = None
    ) -> dict[str, Any]:
        return self.field_mapper.map_from_universal(task, self.provider, self.task_mappings, context)
