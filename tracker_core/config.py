"""Dataclass-based configuration for the tracker integrations.

Core components take these objects explicitly; only the service entry point
calls ``from_env``. Sections:
- RateLimitSettings: queueing behaviour and per-provider preset overrides
- WebhookSettings: signing secrets per provider
- RecoveryConfig: backoff and circuit breaker thresholds
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Optional
import os
import time

from tracker_core.integrations.errors import ConfigurationError
from tracker_core.integrations.rate_limiter import (
    TRACKER_RATE_LIMITS,
    RateLimiter,
    RateLimiterConfig,
)
from tracker_core.integrations.types import provider_name
from tracker_core.integrations.webhooks import BaseWebhookHandler
from tracker_core.providers.webhooks import WEBHOOK_HANDLERS, build_webhook_handler
from tracker_core.resilience.recovery import RecoveryConfig


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RateLimitSettings:
    """Limiter behaviour shared by every provider, plus preset overrides."""

    queue_excess: bool = True
    max_queue_size: int = 100
    overrides: Mapping[str, RateLimiterConfig] = field(default_factory=dict)

    def presets(self) -> dict[str, RateLimiterConfig]:
        return {**TRACKER_RATE_LIMITS, **self.overrides}

    def build_limiter(
        self, provider: Any, clock: Callable[[], float] = time.monotonic
    ) -> RateLimiter:
        return RateLimiter.for_tracker(
            provider,
            self.presets(),
            queue_excess=self.queue_excess,
            max_queue_size=self.max_queue_size,
            clock=clock,
        )


@dataclass(frozen=True)
class WebhookSettings:
    """Webhook signing secrets keyed by provider."""

    secrets: Mapping[str, str] = field(default_factory=dict)
    trello_callback_url: str = ""
    enabled_providers: tuple[str, ...] = tuple(WEBHOOK_HANDLERS)

    def secret_for(self, provider: Any) -> str:
        return self.secrets.get(provider_name(provider), "")

    def build_handlers(self) -> dict[str, BaseWebhookHandler]:
        handlers = {}
        for provider in self.enabled_providers:
            options = {"callback_url": self.trello_callback_url} if provider == "trello" else {}
            handlers[provider] = build_webhook_handler(provider, self.secret_for(provider), **options)
        return handlers


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IntegrationsConfig:
    """Complete configuration for the tracker integrations.

    Usage::

        config = IntegrationsConfig.from_env()
        limiter = config.rate_limits.build_limiter("linear")
    """

    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)

    log_level: str = "INFO"
    service_name: str = "tracker-webhooks"

    @classmethod
    def default(cls) -> "IntegrationsConfig":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_env(
        cls,
        prefix: str = "TRACKER_",
        environ: Optional[Mapping[str, str]] = None,
    ) -> "IntegrationsConfig":
        """Create config from environment variables.

        Example: TRACKER_LINEAR_WEBHOOK_SECRET=..., TRACKER_LINEAR_RATE_LIMIT=1500/60000
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(f"{prefix}{name}")
            return value.strip() if value else None

        # Rate limits
        rate_overrides = {}
        for provider, preset in TRACKER_RATE_LIMITS.items():
            raw = get(f"{provider.upper()}_RATE_LIMIT")
            if raw:
                rate_overrides[provider] = _parse_rate(raw, preset, f"{prefix}{provider.upper()}_RATE_LIMIT")
        rate_limits = RateLimitSettings(overrides=rate_overrides)
        if get("QUEUE_EXCESS") is not None:
            rate_limits = replace(rate_limits, queue_excess=_parse_bool(get("QUEUE_EXCESS")))
        if get("MAX_QUEUE_SIZE") is not None:
            rate_limits = replace(
                rate_limits, max_queue_size=_parse_int(get("MAX_QUEUE_SIZE"), f"{prefix}MAX_QUEUE_SIZE")
            )

        # Webhooks
        secrets = {}
        for provider in WEBHOOK_HANDLERS:
            secret = get(f"{provider.upper()}_WEBHOOK_SECRET")
            if secret:
                secrets[provider] = secret
        webhooks = WebhookSettings(secrets=secrets, trello_callback_url=get("TRELLO_CALLBACK_URL") or "")
        enabled = get("ENABLED_PROVIDERS")
        if enabled:
            providers = tuple(p.strip().lower() for p in enabled.split(",") if p.strip())
            unknown = [p for p in providers if p not in WEBHOOK_HANDLERS]
            if unknown:
                raise ConfigurationError(f"Unknown providers in {prefix}ENABLED_PROVIDERS: {unknown}")
            webhooks = replace(webhooks, enabled_providers=providers)

        # Recovery
        recovery = RecoveryConfig()
        if get("RECOVERY_MAX_RETRIES") is not None:
            recovery = replace(
                recovery,
                max_retries=_parse_int(get("RECOVERY_MAX_RETRIES"), f"{prefix}RECOVERY_MAX_RETRIES"),
            )

        overrides: dict[str, Any] = {}
        if get("LOG_LEVEL"):
            overrides["log_level"] = get("LOG_LEVEL").upper()
        if get("SERVICE_NAME"):
            overrides["service_name"] = get("SERVICE_NAME")

        return cls(rate_limits=rate_limits, webhooks=webhooks, recovery=recovery, **overrides)


def _parse_int(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _parse_bool(raw: str) -> bool:
    return raw.lower() in ("1", "true", "yes", "on")


def _parse_rate(raw: str, preset: RateLimiterConfig, name: str) -> RateLimiterConfig:
    """``"100/10000"`` -> 100 requests per 10,000 ms."""
    max_requests, sep, window_ms = raw.partition("/")
    if not sep:
        raise ConfigurationError(f"{name} must look like <max_requests>/<window_ms>, got {raw!r}")
    return replace(
        preset,
        max_requests=_parse_int(max_requests, name),
        window_ms=_parse_int(window_ms, name),
    )
