"""Test webhook signature verification, dispatch and request handling."""
import pytest
import asyncio
import base64
import hashlib
import hmac
import json

from tracker_core.integrations.errors import HandlerError, PayloadMalformed, SignatureInvalid
from tracker_core.integrations.webhooks import (
    WILDCARD,
    BaseWebhookHandler,
    SignatureStrategy,
    WebhookEventPayload,
    WebhookRequest,
)

SECRET = "shh"


class SampleHandler(BaseWebhookHandler):
    provider = "sample"
    signature_strategy = SignatureStrategy.HMAC_SHA256

    def extract_signature(self, headers):
        return headers.get("x-signature", "")

    def extract_event_type(self, payload, headers):
        return payload["type"]

    def extract_resource(self, payload):
        return "task", payload.get("id", "")


def make_handler(strategy, secret=SECRET):
    handler = SampleHandler(secret)
    handler.signature_strategy = strategy
    return handler


def sha256_hex(body, secret=SECRET):
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def sha1_b64(body, secret=SECRET):
    return base64.b64encode(hmac.new(secret.encode(), body.encode(), hashlib.sha1).digest()).decode()


def signed_request(body, secret=SECRET):
    return WebhookRequest(body=body, headers={"X-Signature": sha256_hex(body, secret)})


def event(event_type="task.created"):
    return WebhookEventPayload(
        event_type=event_type, source="sample", resource_type="task", resource_id="1", payload={}
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

BODY = '{"type": "task.created", "id": "t1"}'


def test_verify_hmac_sha256():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    signature = sha256_hex(BODY)
    assert handler.verify(BODY, signature)
    assert handler.verify(BODY, "sha256=" + signature)
    assert not handler.verify(BODY + " ", signature)
    assert not handler.verify(BODY, "not-hex")
    assert not handler.verify(BODY, signature[:10])
    assert not handler.verify(BODY, "")


def test_verify_hmac_sha1_base64():
    handler = make_handler(SignatureStrategy.HMAC_SHA1)
    signature = sha1_b64(BODY)
    assert handler.verify(BODY, signature)
    assert not handler.verify(BODY.replace("t1", "t2"), signature)
    assert not handler.verify(BODY, "%%%not base64%%%")


def test_verify_x_hook_secret():
    handler = make_handler(SignatureStrategy.X_HOOK_SECRET)
    assert handler.verify(BODY, sha256_hex(BODY))
    assert not handler.verify(BODY, sha256_hex(BODY, "other"))


def test_verify_token():
    handler = make_handler(SignatureStrategy.VERIFICATION_TOKEN)
    assert handler.verify(BODY, SECRET)
    assert not handler.verify(BODY, SECRET + "x")
    assert not handler.verify(BODY, "")


def test_verify_none_accepts_anything():
    handler = make_handler(SignatureStrategy.NONE, secret="")
    assert handler.verify(BODY, "")


def test_verify_without_secret_rejects():
    handler = make_handler(SignatureStrategy.HMAC_SHA256, secret="")
    assert not handler.verify(BODY, sha256_hex(BODY, ""))


# ---------------------------------------------------------------------------
# Registry and dispatch
# ---------------------------------------------------------------------------

def test_on_returns_unsubscribe():
    handler = make_handler(SignatureStrategy.NONE)
    callback = lambda e: None
    unsubscribe = handler.on("task.created", callback)
    handler.on("task.created", callback)
    assert handler.handler_count("task.created") == 1

    unsubscribe()
    assert handler.handler_count() == 0


def test_off_and_remove_all():
    handler = make_handler(SignatureStrategy.NONE)
    handler.on("a", lambda e: None)
    handler.on("b", lambda e: None)
    handler.off("a")
    assert handler.handler_count() == 1
    handler.remove_all_handlers()
    assert handler.handler_count() == 0


@pytest.mark.asyncio
async def test_dispatch_exact_and_wildcard():
    handler = make_handler(SignatureStrategy.NONE)
    seen = []

    async def on_created(e):
        seen.append(("exact", e.event_type))

    handler.on("task.created", on_created)
    handler.on(WILDCARD, lambda e: seen.append(("any", e.event_type)))
    handler.on("task.deleted", lambda e: seen.append(("other", e.event_type)))

    failures = await handler.dispatch(event())
    assert failures == []
    assert sorted(seen) == [("any", "task.created"), ("exact", "task.created")]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    handler = make_handler(SignatureStrategy.NONE)
    seen = []

    def broken(e):
        raise RuntimeError("boom")

    async def slow(e):
        await asyncio.sleep(0)
        seen.append(e.event_type)

    handler.on("task.created", broken)
    handler.on("task.created", slow)

    failures = await handler.dispatch(event())
    assert seen == ["task.created"]
    assert len(failures) == 1
    assert isinstance(failures[0], HandlerError)
    assert isinstance(failures[0].original, RuntimeError)


# ---------------------------------------------------------------------------
# Request pipeline
# ---------------------------------------------------------------------------

def test_parse_payload_rejects_non_objects():
    handler = make_handler(SignatureStrategy.NONE)
    with pytest.raises(PayloadMalformed):
        handler.parse_payload("not json", {})
    with pytest.raises(PayloadMalformed):
        handler.parse_payload("[1, 2]", {})


def test_parse_payload_builds_event():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    parsed = handler.parse_payload(BODY, {"X-Delivery-Id": "d-1", "X-Signature": "abc"})
    assert parsed.event_type == "task.created"
    assert parsed.resource_id == "t1"
    assert parsed.delivery_id == "d-1"
    assert parsed.signature == "abc"
    assert parsed.to_dict()["source"] == "sample"


@pytest.mark.asyncio
async def test_handle_request_success():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    received = []
    handler.on("task.created", received.append)

    response = await handler.handle_request(signed_request(BODY))
    assert response.status == 200
    assert response.json() == {"success": True, "eventType": "task.created", "deliveryId": None}
    assert response.headers["Content-Type"] == "application/json"
    assert received[0].payload == {"type": "task.created", "id": "t1"}


@pytest.mark.asyncio
async def test_handle_request_bad_signature_is_401():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    called = []
    handler.on(WILDCARD, called.append)

    response = await handler.handle_request(signed_request(BODY, secret="wrong"))
    assert response.status == 401
    assert called == []


@pytest.mark.asyncio
async def test_handle_request_malformed_is_400():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    response = await handler.handle_request(signed_request("{not json"))
    assert response.status == 400
    assert response.json() == {"error": "Invalid payload"}


@pytest.mark.asyncio
async def test_handle_request_extractor_failure_is_500():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    response = await handler.handle_request(signed_request('{"id": "t1"}'))
    assert response.status == 500


@pytest.mark.asyncio
async def test_handle_request_handler_failure_still_200():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)

    def broken(e):
        raise ValueError("nope")

    handler.on("task.created", broken)
    response = await handler.handle_request(signed_request(BODY))
    assert response.status == 200


# ---------------------------------------------------------------------------
# Handshakes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_x_hook_secret_handshake_adopts_secret():
    handler = make_handler(SignatureStrategy.X_HOOK_SECRET, secret="")
    called = []
    handler.on(WILDCARD, called.append)
    response = await handler.handle_request(
        WebhookRequest(body="", headers={"X-Hook-Secret": "negotiated"})
    )
    assert response.status == 200
    assert called == []
    assert response.headers == {"X-Hook-Secret": "negotiated"}
    assert response.body == ""
    assert handler.secret == "negotiated"

    follow_up = WebhookRequest(body=BODY, headers={"X-Signature": sha256_hex(BODY, "negotiated")})
    assert (await handler.handle_request(follow_up)).status == 200


@pytest.mark.asyncio
async def test_challenge_echo_for_unsigned_providers():
    handler = make_handler(SignatureStrategy.NONE, secret="")
    response = await handler.handle_request(
        WebhookRequest(body=json.dumps({"challenge": "abc123"}))
    )
    assert response.status == 200
    assert response.json() == {"challenge": "abc123"}


def test_no_challenge_for_regular_events():
    handler = make_handler(SignatureStrategy.NONE)
    assert handler.handle_challenge(WebhookRequest(body=BODY)) is None
    assert handler.handle_challenge(WebhookRequest(body="garbage")) is None


# ---------------------------------------------------------------------------
# Failure responses
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_bad_signature_status_and_body():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    response = await handler.handle_request(signed_request(BODY, secret="wrong"))
    assert response.status == SignatureInvalid.status_code
    assert response.json() == {"error": "Invalid webhook signature"}


@pytest.mark.asyncio
async def test_non_string_event_type_is_400():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)
    response = await handler.handle_request(signed_request('{"type": {"name": "task.created"}, "id": "t1"}'))
    assert response.status == 400


@pytest.mark.asyncio
async def test_dispatch_failure_is_500():
    handler = make_handler(SignatureStrategy.HMAC_SHA256)

    async def broken_dispatch(event):
        raise RuntimeError("registry corrupted")

    handler.dispatch = broken_dispatch
    response = await handler.handle_request(signed_request(BODY))
    assert response.status == 500
    assert response.json() == {"error": "Webhook processing failed"}
