"""
Tracker Core Errors: Shared Exception Taxonomy.

Every integration component raises from this hierarchy so provider adapters
can make retry decisions on type alone:
- RateLimitExceeded / QueueFull / RateLimiterReset: retryable, carry backoff hints
- ConfigurationError / MappingConfigError: programmer or config bugs, never retried
- WebhookError subclasses: map onto HTTP status codes for inbound requests
"""
from __future__ import annotations
from typing import Optional


class IntegrationError(Exception):
    """Base class for all tracker integration errors."""

    retryable: bool = False

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
        }


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(IntegrationError):
    """Invalid or unknown configuration (e.g. no rate-limit preset for a provider)."""


class MappingConfigError(ConfigurationError):
    """A field mapping table is wrong. Indicates a bug, not bad external data."""


class UnknownTransformError(MappingConfigError):
    def __init__(self, transform: str):
        super().__init__(f"Unknown transform: {transform}")
        self.transform = transform


class MissingRequiredFieldError(MappingConfigError):
    def __init__(self, field_path: str, provider: Optional[str] = None):
        super().__init__(f"Required field missing: {field_path}", provider)
        self.field_path = field_path


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateLimitExceeded(IntegrationError):
    """Request rejected by the local token bucket or the remote API (HTTP 429)."""

    retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after_ms: int = 0,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider)
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after_ms"] = self.retry_after_ms
        return data


class QueueFull(RateLimitExceeded):
    """The limiter's wait queue is at capacity."""

    def __init__(
        self,
        message: str = "Rate limit queue full",
        retry_after_ms: int = 0,
        provider: Optional[str] = None,
    ):
        super().__init__(message, retry_after_ms, provider)


class RateLimiterReset(IntegrationError):
    """A queued acquire() was rejected because the limiter was reset."""

    retryable = True

    def __init__(self, message: str = "Rate limiter reset", provider: Optional[str] = None):
        super().__init__(message, provider)


class CircuitOpenError(IntegrationError):
    """Calls to a provider are suspended after repeated failures."""

    retryable = True


class MaxRetriesExceeded(IntegrationError):
    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message, provider)
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookError(IntegrationError):
    status_code: int = 500


class SignatureInvalid(WebhookError):
    status_code = 401


class PayloadMalformed(WebhookError):
    status_code = 400


class HandlerError(WebhookError):
    """A registered event handler raised. Logged, never surfaced to the sender."""

    def __init__(self, event_type: str, original: BaseException, provider: Optional[str] = None):
        super().__init__(f"Handler for {event_type} failed: {original}", provider)
        self.event_type = event_type
        self.original = original
