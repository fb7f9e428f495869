"""
Tracker Core Resilience: Fault Tolerance for Provider Calls.

- RateLimitRecovery: Backoff with jitter and a per-provider circuit breaker
"""
from tracker_core.resilience.recovery import (
    CircuitState,
    ProviderRateLimitState,
    RateLimitRecovery,
    RecoveryConfig,
)

__all__ = [
    "CircuitState",
    "ProviderRateLimitState",
    "RateLimitRecovery",
    "RecoveryConfig",
]
