"""
Tracker Core Integrations: Shared Cross-Provider Infrastructure.

Provides the pieces every tracker adapter depends on:
- RateLimiter / ComplexityTracker: Token bucket and point-budget admission
- FieldMapper: Provider record <-> universal task mapping
- BaseWebhookHandler: Inbound signature verification and dispatch
- TrackerAdapter: HTTP adapter composing the three above
"""
from tracker_core.integrations.adapter_base import (
    AdapterRequest,
    AdapterResponse,
    IntegrationHealth,
    TrackerAdapter,
    TrackerCredentials,
)
from tracker_core.integrations.errors import (
    CircuitOpenError,
    ConfigurationError,
    HandlerError,
    IntegrationError,
    MappingConfigError,
    MaxRetriesExceeded,
    MissingRequiredFieldError,
    PayloadMalformed,
    QueueFull,
    RateLimiterReset,
    RateLimitExceeded,
    SignatureInvalid,
    UnknownTransformError,
    WebhookError,
)
from tracker_core.integrations.field_mapper import (
    MISSING,
    FieldMapper,
    FieldMappingConfig,
    PriorityMapping,
    StatusMapping,
    TransformContext,
    TransformKind,
    get_path,
    set_path,
)
from tracker_core.integrations.rate_limiter import (
    TRACKER_COMPLEXITY_LIMITS,
    TRACKER_RATE_LIMITS,
    ComplexityTracker,
    RateLimiter,
    RateLimiterConfig,
)
from tracker_core.integrations.types import (
    StatusCategory,
    TrackerComment,
    TrackerLabel,
    TrackerPriority,
    TrackerProject,
    TrackerProvider,
    TrackerStatus,
    TrackerTask,
    TrackerUser,
)
from tracker_core.integrations.webhooks import (
    BaseWebhookHandler,
    SignatureStrategy,
    WebhookEventPayload,
    WebhookRequest,
    WebhookResponse,
)

__all__ = [
    # Adapter
    "AdapterRequest",
    "AdapterResponse",
    "IntegrationHealth",
    "TrackerAdapter",
    "TrackerCredentials",
    # Errors
    "CircuitOpenError",
    "ConfigurationError",
    "HandlerError",
    "IntegrationError",
    "MappingConfigError",
    "MaxRetriesExceeded",
    "MissingRequiredFieldError",
    "PayloadMalformed",
    "QueueFull",
    "RateLimiterReset",
    "RateLimitExceeded",
    "SignatureInvalid",
    "UnknownTransformError",
    "WebhookError",
    # Field mapping
    "MISSING",
    "FieldMapper",
    "FieldMappingConfig",
    "PriorityMapping",
    "StatusMapping",
    "TransformContext",
    "TransformKind",
    "get_path",
    "set_path",
    # Rate limiting
    "TRACKER_COMPLEXITY_LIMITS",
    "TRACKER_RATE_LIMITS",
    "ComplexityTracker",
    "RateLimiter",
    "RateLimiterConfig",
    # Universal model
    "StatusCategory",
    "TrackerComment",
    "TrackerLabel",
    "TrackerPriority",
    "TrackerProject",
    "TrackerProvider",
    "TrackerStatus",
    "TrackerTask",
    "TrackerUser",
    # Webhooks
    "BaseWebhookHandler",
    "SignatureStrategy",
    "WebhookEventPayload",
    "WebhookRequest",
    "WebhookResponse",
]
