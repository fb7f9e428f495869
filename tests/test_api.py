"""Test webhook HTTP endpoints."""
import pytest
import hashlib
import hmac
import json

from fastapi.testclient import TestClient

from tracker_api.main import VERSION, create_app
from tracker_api.middleware import get_current_organization
from tracker_core.config import IntegrationsConfig, WebhookSettings


@pytest.fixture
def client():
    config = IntegrationsConfig(
        webhooks=WebhookSettings(secrets={"linear": "s"}, enabled_providers=("linear", "monday")),
    )
    app = create_app(config)
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": VERSION, "providers": ["linear", "monday"]}


def test_list_providers(client):
    assert client.get("/webhooks").json() == {"providers": ["linear", "monday"]}


def test_signed_linear_webhook_dispatches(client):
    handler = client.app.state.webhook_handlers["linear"]
    seen = []
    handler.on("Issue.update", lambda event: seen.append(get_current_organization()))

    body = json.dumps({"action": "update", "type": "Issue", "data": {"id": "i-1"}})
    signature = hmac.new(b"s", body.encode(), hashlib.sha256).hexdigest()
    response = client.post(
        "/webhooks/linear",
        content=body,
        headers={"Linear-Signature": signature, "X-Organization-ID": "org-7"},
    )
    assert response.status_code == 200
    assert response.json()["eventType"] == "Issue.update"
    assert seen == ["org-7"]


def test_bad_signature_rejected(client):
    response = client.post("/webhooks/linear", content="{}", headers={"Linear-Signature": "00"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid webhook signature"}


def test_monday_challenge(client):
    response = client.post("/webhooks/monday", content=json.dumps({"challenge": "xyz"}))
    assert response.status_code == 200
    assert response.json() == {"challenge": "xyz"}


def test_unknown_provider_404(client):
    response = client.post("/webhooks/jira", content="{}")
    assert response.status_code == 404
