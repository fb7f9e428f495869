"""Test environment-driven integrations configuration."""
import pytest

from tracker_core.config import IntegrationsConfig, RateLimitSettings, WebhookSettings
from tracker_core.integrations.errors import ConfigurationError
from tracker_core.integrations.rate_limiter import RateLimiterConfig
from tracker_core.providers.webhooks import LinearWebhookHandler, TrelloWebhookHandler


def test_defaults():
    config = IntegrationsConfig.from_env(environ={})
    assert config == IntegrationsConfig.default()
    assert config.rate_limits.queue_excess is True
    assert config.recovery.max_retries == 5
    assert set(config.webhooks.build_handlers()) == {
        "linear", "trello", "asana", "notion", "monday", "clickup",
    }


def test_from_env_overrides():
    config = IntegrationsConfig.from_env(environ={
        "TRACKER_LINEAR_RATE_LIMIT": "10/1000",
        "TRACKER_QUEUE_EXCESS": "false",
        "TRACKER_MAX_QUEUE_SIZE": "7",
        "TRACKER_LINEAR_WEBHOOK_SECRET": "lin",
        "TRACKER_TRELLO_WEBHOOK_SECRET": "tre",
        "TRACKER_TRELLO_CALLBACK_URL": "https://cb/trello",
        "TRACKER_ENABLED_PROVIDERS": "linear, Trello",
        "TRACKER_RECOVERY_MAX_RETRIES": "2",
        "TRACKER_LOG_LEVEL": "debug",
        "TRACKER_SERVICE_NAME": "hooks",
    })
    limiter = config.rate_limits.build_limiter("linear")
    assert limiter.config.max_requests == 10
    assert limiter.config.window_ms == 1000
    assert limiter.config.queue_excess is False
    assert limiter.config.max_queue_size == 7

    handlers = config.webhooks.build_handlers()
    assert set(handlers) == {"linear", "trello"}
    assert isinstance(handlers["linear"], LinearWebhookHandler)
    assert handlers["linear"].secret == "lin"
    assert isinstance(handlers["trello"], TrelloWebhookHandler)
    assert handlers["trello"].callback_url == "https://cb/trello"

    assert config.recovery.max_retries == 2
    assert config.log_level == "DEBUG"
    assert config.service_name == "hooks"


def test_custom_prefix():
    config = IntegrationsConfig.from_env(prefix="APP_", environ={"APP_ASANA_WEBHOOK_SECRET": "a"})
    assert config.webhooks.secret_for("asana") == "a"
    assert config.webhooks.secret_for("linear") == ""


@pytest.mark.parametrize(
    "environ",
    [
        {"TRACKER_LINEAR_RATE_LIMIT": "fast"},
        {"TRACKER_LINEAR_RATE_LIMIT": "10/soon"},
        {"TRACKER_LINEAR_RATE_LIMIT": "0/1000"},
        {"TRACKER_MAX_QUEUE_SIZE": "lots"},
        {"TRACKER_ENABLED_PROVIDERS": "linear,basecamp"},
    ],
)
def test_invalid_values_raise(environ):
    with pytest.raises(ConfigurationError):
        IntegrationsConfig.from_env(environ=environ)


def test_rate_limit_override_applies_only_to_provider():
    settings = RateLimitSettings(
        overrides={"trello": RateLimiterConfig(max_requests=5, window_ms=500)},
        queue_excess=False,
    )
    assert settings.build_limiter("trello").config.max_requests == 5
    assert settings.build_limiter("linear").config.max_requests == 1500


def test_webhook_settings_enabled_subset():
    settings = WebhookSettings(secrets={"notion": "t"}, enabled_providers=("notion",))
    handlers = settings.build_handlers()
    assert list(handlers) == ["notion"]
    assert handlers["notion"].secret == "t"
