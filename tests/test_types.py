"""Test universal model validation and the error taxonomy."""
import pytest
from datetime import datetime, timezone

from pydantic import ValidationError

from tracker_core.integrations.adapter_base import IntegrationHealth
from tracker_core.integrations.errors import (
    HandlerError,
    IntegrationError,
    PayloadMalformed,
    QueueFull,
    RateLimitExceeded,
    SignatureInvalid,
    WebhookError,
)
from tracker_core.integrations.types import (
    ProjectMember,
    StatusCategory,
    TrackerComment,
    TrackerPriority,
    TrackerProject,
    TrackerProvider,
    TrackerUser,
    provider_name,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_priority_level_bounds():
    assert TrackerPriority(level=4, name="Urgent").level == 4
    with pytest.raises(ValidationError):
        TrackerPriority(level=5, name="Too high")


def test_project_and_comment_models():
    ada = TrackerUser(id="u1", external_id="u1", name="Ada")
    project = TrackerProject(
        id="p1",
        external_id="p1",
        provider="asana",
        name="Roadmap",
        members=[ProjectMember(user=ada, role="owner")],
        created_at=NOW,
        updated_at=NOW,
    )
    assert project.provider is TrackerProvider.ASANA
    assert project.members[0].user.name == "Ada"

    comment = TrackerComment(
        id="c1", external_id="c1", body="<b>hi</b>", body_format="html",
        author=ada, created_at=NOW, updated_at=NOW, task_id="t1",
    )
    assert comment.body_format == "html"
    with pytest.raises(ValidationError):
        TrackerComment(
            id="c1", external_id="c1", body="x", body_format="rtf",
            author=ada, created_at=NOW, updated_at=NOW, task_id="t1",
        )


def test_provider_name_normalizes():
    assert provider_name(TrackerProvider.LINEAR) == "linear"
    assert provider_name("ClickUp") == "clickup"
    assert StatusCategory("in_progress") is StatusCategory.IN_PROGRESS


def test_error_taxonomy():
    assert issubclass(QueueFull, RateLimitExceeded)
    assert QueueFull().retryable
    assert not IntegrationError("x").retryable

    assert WebhookError("x").status_code == 500
    assert SignatureInvalid("x").status_code == 401
    assert PayloadMalformed("x").status_code == 400

    original = KeyError("k")
    error = HandlerError("task.created", original, "linear")
    assert error.original is original
    assert error.to_dict()["provider"] == "linear"

    assert RateLimitExceeded(retry_after_ms=250, provider="trello").to_dict() == {
        "error": "RateLimitExceeded",
        "message": "Rate limit exceeded",
        "provider": "trello",
        "retryable": True,
        "retry_after_ms": 250,
    }


def test_integration_health_summary():
    health = IntegrationHealth(provider="linear", total_requests=4, failed_requests=1)
    summary = health.to_dict()
    assert summary["error_rate"] == 0.25
    assert summary["last_success"] is None
    assert IntegrationHealth(provider="x").error_rate == 0.0
