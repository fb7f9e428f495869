"""
Tracker Core Webhook Receiver: Inbound Event Verification & Dispatch.

Receives provider webhooks and fans them out to registered handlers with:
- Signature verification (HMAC-SHA256, HMAC-SHA1, X-Hook-Secret, token, none)
- Constant-time comparison on decoded digests
- Handshake / challenge echo for providers that verify endpoints on setup
- Concurrent dispatch where one failing handler never blocks the others
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union
import asyncio
import base64
import hashlib
import hmac
import inspect
import json
import logging

from tracker_core.integrations.errors import (
    HandlerError,
    PayloadMalformed,
    SignatureInvalid,
    WebhookError,
)
from tracker_core.integrations.types import provider_name

logger = logging.getLogger(__name__)

WILDCARD = "*"


class SignatureStrategy(str, Enum):
    HMAC_SHA256 = "hmac-sha256"                # Linear, GitHub, Slack
    HMAC_SHA1 = "hmac-sha1"                    # Trello
    X_HOOK_SECRET = "x-hook-secret"            # Asana
    VERIFICATION_TOKEN = "verification-token"  # Notion
    NONE = "none"                              # Monday, ClickUp


# ---------------------------------------------------------------------------
# Request / response / event
# ---------------------------------------------------------------------------

@dataclass
class WebhookRequest:
    """Raw inbound request: body exactly as received, headers in any case."""
    body: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class WebhookResponse:
    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WebhookEventPayload:
    """A verified, parsed inbound event. Created once per request."""
    event_type: str
    source: str
    resource_type: str
    resource_id: str
    payload: Any
    action: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    signature: Optional[str] = None
    delivery_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "action": self.action,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "delivery_id": self.delivery_id,
        }


WebhookEventHandler = Callable[[WebhookEventPayload], Union[None, Awaitable[None]]]


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in headers.items()}


def json_response(status: int, body: dict[str, Any]) -> WebhookResponse:
    return WebhookResponse(
        status=status,
        body=json.dumps(body),
        headers={"Content-Type": "application/json"},
    )


# ---------------------------------------------------------------------------
# BaseWebhookHandler
# ---------------------------------------------------------------------------

class BaseWebhookHandler(ABC):
    """
    Verifies and dispatches webhooks for one provider.

    Subclasses pick a signature strategy and say where the signature, event
    type and resource live in the provider's request::

        class LinearWebhookHandler(BaseWebhookHandler):
            provider = TrackerProvider.LINEAR
            signature_strategy = SignatureStrategy.HMAC_SHA256
            ...

        handler = LinearWebhookHandler(secret)
        handler.on("Issue.create", on_issue_created)
        response = await handler.handle_request(WebhookRequest(body, headers))
    """

    provider: str = ""
    signature_strategy: SignatureStrategy = SignatureStrategy.HMAC_SHA256

    def __init__(self, secret: str = ""):
        self.secret = secret
        self._handlers: dict[str, list[WebhookEventHandler]] = {}

    # --- Provider-specific extraction ---

    @abstractmethod
    def extract_signature(self, headers: dict[str, str]) -> str:
        """Signature (or token) from lower-cased headers. Empty string if absent."""

    @abstractmethod
    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        ...

    @abstractmethod
    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        """(resource_type, resource_id) affected by the event."""

    def extract_action(self, payload: dict[str, Any]) -> Optional[str]:
        return None

    def extract_delivery_id(self, headers: dict[str, str]) -> Optional[str]:
        return (
            headers.get("x-delivery-id")
            or headers.get("x-webhook-delivery-id")
            or headers.get("x-request-id")
        )

    def signature_suffix(self) -> str:
        """Extra text appended to the body before HMAC-SHA1 signing (Trello: callback URL)."""
        return ""

    # --- Verification ---

    def verify(self, payload: str, signature: str) -> bool:
        """True if ``signature`` authenticates ``payload``. Never raises."""
        strategy = self.signature_strategy
        if strategy is SignatureStrategy.NONE:
            return True
        if not signature or not self.secret:
            return False

        try:
            if strategy is SignatureStrategy.HMAC_SHA256:
                return self._verify_hex(payload, signature.removeprefix("sha256="))
            if strategy is SignatureStrategy.HMAC_SHA1:
                expected = self._digest(hashlib.sha1, payload + self.signature_suffix())
                return hmac.compare_digest(expected, base64.b64decode(signature, validate=True))
            if strategy is SignatureStrategy.X_HOOK_SECRET:
                return self._verify_hex(payload, signature)
            if strategy is SignatureStrategy.VERIFICATION_TOKEN:
                return hmac.compare_digest(self.secret.encode("utf-8"), signature.encode("utf-8"))
        except (ValueError, TypeError, AttributeError):
            return False
        return False

    def _digest(self, algorithm: Callable[..., Any], message: str) -> bytes:
        return hmac.new(
            self.secret.encode("utf-8"),
            message.encode("utf-8"),
            algorithm,
        ).digest()

    def _verify_hex(self, payload: str, signature: str) -> bool:
        return hmac.compare_digest(self._digest(hashlib.sha256, payload), bytes.fromhex(signature))

    # --- Handler registry ---

    def on(self, event_type: str, handler: WebhookEventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` (or ``"*"``). Returns an unsubscribe callable."""
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            current = self._handlers.get(event_type)
            if current and handler in current:
                current.remove(handler)
                if not current:
                    del self._handlers[event_type]

        return unsubscribe

    def off(self, event_type: str) -> None:
        self._handlers.pop(event_type, None)

    def remove_all_handlers(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, event: WebhookEventPayload) -> list[HandlerError]:
        """Run exact-match and wildcard handlers concurrently. Returns per-handler failures."""
        handlers = list(dict.fromkeys([
            *self._handlers.get(event.event_type, []),
            *self._handlers.get(WILDCARD, []),
        ]))
        if not handlers:
            return []
        results = await asyncio.gather(*(self._run_handler(h, event) for h in handlers))
        return [r for r in results if r is not None]

    async def _run_handler(
        self, handler: WebhookEventHandler, event: WebhookEventPayload
    ) -> Optional[HandlerError]:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.exception(
                "Webhook handler failed",
                extra={
                    "provider": provider_name(self.provider),
                    "event_type": event.event_type,
                    "delivery_id": event.delivery_id,
                },
            )
            return HandlerError(event.event_type, exc, provider_name(self.provider))
        return None

    # --- Request pipeline ---

    def parse_payload(self, body: str, headers: Mapping[str, str]) -> WebhookEventPayload:
        """Parse a verified body. Raises PayloadMalformed for non-object bodies or a non-string event type."""
        headers = normalize_headers(headers)
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, TypeError) as exc:
            raise PayloadMalformed("Webhook body is not valid JSON", provider_name(self.provider)) from exc
        if not isinstance(payload, dict):
            raise PayloadMalformed("Webhook body must be a JSON object", provider_name(self.provider))

        event_type = self.extract_event_type(payload, headers)
        if not isinstance(event_type, str) or not event_type:
            raise PayloadMalformed("Webhook event type must be a string", provider_name(self.provider))

        resource_type, resource_id = self.extract_resource(payload)
        return WebhookEventPayload(
            event_type=event_type,
            action=self.extract_action(payload),
            source=provider_name(self.provider),
            resource_type=resource_type,
            resource_id=str(resource_id),
            payload=payload,
            signature=self.extract_signature(headers) or None,
            delivery_id=self.extract_delivery_id(headers),
        )

    def handle_challenge(self, request: WebhookRequest) -> Optional[WebhookResponse]:
        """
        Answer endpoint-verification requests, or return None for normal events.

        x-hook-secret: echo the ``X-Hook-Secret`` header, adopting it as the
        signing secret when none is configured. none: echo a JSON ``challenge``.
        """
        headers = normalize_headers(request.headers)

        if self.signature_strategy is SignatureStrategy.X_HOOK_SECRET:
            hook_secret = headers.get("x-hook-secret")
            if not hook_secret:
                return None
            if not self.secret:
                self.secret = hook_secret
            logger.info("Webhook handshake", extra={"provider": provider_name(self.provider)})
            return WebhookResponse(status=200, body="", headers={"X-Hook-Secret": hook_secret})

        if self.signature_strategy is SignatureStrategy.NONE and request.body:
            try:
                payload = json.loads(request.body)
            except json.JSONDecodeError:
                return None
            if isinstance(payload, dict) and "challenge" in payload:
                logger.info("Webhook challenge", extra={"provider": provider_name(self.provider)})
                return json_response(200, {"challenge": payload["challenge"]})

        return None

    async def handle_request(self, request: WebhookRequest) -> WebhookResponse:
        """Verify, parse and dispatch one request. Always returns a response, never raises."""
        headers = normalize_headers(request.headers)
        request = WebhookRequest(body=request.body, headers=headers)
        provider = provider_name(self.provider)

        challenge = self.handle_challenge(request)
        if challenge is not None:
            return challenge

        if not self.verify(request.body, self.extract_signature(headers)):
            error = SignatureInvalid("Invalid webhook signature", provider)
            logger.warning(
                "Webhook signature verification failed",
                extra={"provider": provider, "delivery_id": self.extract_delivery_id(headers)},
            )
            return json_response(error.status_code, {"error": error.message})

        try:
            event = self.parse_payload(request.body, headers)
            failures = await self.dispatch(event)
        except PayloadMalformed as exc:
            logger.warning("Malformed webhook payload", extra={"provider": provider, "reason": exc.message})
            return json_response(exc.status_code, {"error": "Invalid payload"})
        except Exception:
            logger.exception("Webhook processing failed", extra={"provider": provider})
            return json_response(WebhookError.status_code, {"error": "Webhook processing failed"})

        logger.info(
            "Webhook dispatched",
            extra={
                "provider": provider,
                "event_type": event.event_type,
                "delivery_id": event.delivery_id,
                "handler_failures": len(failures),
            },
        )
        return json_response(200, {
            "success": True,
            "eventType": event.event_type,
            "deliveryId": event.delivery_id,
        })
