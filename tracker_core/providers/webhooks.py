"""
Tracker Core Provider Webhooks: Per-Tracker Receivers.

Concrete BaseWebhookHandler subclasses, one per signing scheme in use:
- Linear: hex HMAC-SHA256 in ``Linear-Signature``
- Trello: base64 HMAC-SHA1 over body + callback URL in ``X-Trello-Webhook``
- Asana: X-Hook-Secret handshake, then HMAC-SHA256 in ``X-Hook-Signature``
- Notion: shared verification token
- Monday, ClickUp: unsigned, URL verification by challenge echo
"""
from __future__ import annotations
from typing import Any, Optional

from tracker_core.integrations.errors import ConfigurationError, PayloadMalformed
from tracker_core.integrations.types import TrackerProvider, provider_name
from tracker_core.integrations.webhooks import BaseWebhookHandler, SignatureStrategy


def _require(payload: dict[str, Any], key: str, provider: str) -> Any:
    value = payload.get(key)
    if value is None:
        raise PayloadMalformed(f"Webhook payload missing {key!r}", provider)
    return value


class LinearWebhookHandler(BaseWebhookHandler):
    """Linear sends ``{"action", "type", "data": {...}}``; event type is ``Issue.create`` etc."""

    provider = TrackerProvider.LINEAR
    signature_strategy = SignatureStrategy.HMAC_SHA256

    def extract_signature(self, headers: dict[str, str]) -> str:
        return headers.get("linear-signature", "")

    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        resource = _require(payload, "type", "linear")
        action = _require(payload, "action", "linear")
        return f"{resource}.{action}"

    def extract_action(self, payload: dict[str, Any]) -> Optional[str]:
        return payload.get("action")

    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise PayloadMalformed("Linear data must be an object", "linear")
        return str(payload.get("type", "unknown")).lower(), str(data.get("id", ""))

    def extract_delivery_id(self, headers: dict[str, str]) -> Optional[str]:
        return headers.get("linear-delivery") or super().extract_delivery_id(headers)


class TrelloWebhookHandler(BaseWebhookHandler):
    """Trello signs ``body + callback_url`` with the app secret."""

    provider = TrackerProvider.TRELLO
    signature_strategy = SignatureStrategy.HMAC_SHA1

    def __init__(self, secret: str = "", callback_url: str = ""):
        super().__init__(secret)
        self.callback_url = callback_url

    def signature_suffix(self) -> str:
        return self.callback_url

    def extract_signature(self, headers: dict[str, str]) -> str:
        return headers.get("x-trello-webhook", "")

    def _action(self, payload: dict[str, Any]) -> dict[str, Any]:
        action = _require(payload, "action", "trello")
        if not isinstance(action, dict) or "type" not in action:
            raise PayloadMalformed("Trello action has no type", "trello")
        return action

    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        return self._action(payload)["type"]

    def extract_action(self, payload: dict[str, Any]) -> Optional[str]:
        return self._action(payload)["type"]

    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        action = self._action(payload)
        action_type = action["type"]
        data = action.get("data") or {}

        if "Comment" in action_type or action_type == "commentCard":
            return "comment", str(action.get("id", ""))
        for resource in ("card", "list", "board"):
            if resource.capitalize() in action_type:
                return resource, str((data.get(resource) or {}).get("id", ""))
        return "unknown", ""


class AsanaWebhookHandler(BaseWebhookHandler):
    """
    Asana batches events as ``{"events": [...]}``.

    The event type comes from the first event (``task.changed``); handlers get
    the whole batch in ``event.payload``. An empty batch is a heartbeat.
    """

    provider = TrackerProvider.ASANA
    signature_strategy = SignatureStrategy.X_HOOK_SECRET

    def extract_signature(self, headers: dict[str, str]) -> str:
        return headers.get("x-hook-signature", "")

    def _first_event(self, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        events = payload.get("events")
        if not isinstance(events, list):
            raise PayloadMalformed("Asana payload has no events list", "asana")
        if not events:
            return None
        if not isinstance(events[0], dict):
            raise PayloadMalformed("Asana event must be an object", "asana")
        return events[0]

    @staticmethod
    def _resource(event: dict[str, Any]) -> dict[str, Any]:
        resource = event.get("resource") or {}
        if not isinstance(resource, dict):
            raise PayloadMalformed("Asana event resource must be an object", "asana")
        return resource

    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        first = self._first_event(payload)
        if first is None:
            return "heartbeat"
        resource = self._resource(first)
        return f"{resource.get('resource_type', 'unknown')}.{first.get('action', 'unknown')}"

    def extract_action(self, payload: dict[str, Any]) -> Optional[str]:
        first = self._first_event(payload)
        return first.get("action") if first else None

    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        first = self._first_event(payload)
        if first is None:
            return "unknown", ""
        resource = self._resource(first)
        return str(resource.get("resource_type", "unknown")), str(resource.get("gid", ""))


class NotionWebhookHandler(BaseWebhookHandler):
    """Notion events carry ``type`` (``page.content_updated``) and an ``entity``."""

    provider = TrackerProvider.NOTION
    signature_strategy = SignatureStrategy.VERIFICATION_TOKEN

    def extract_signature(self, headers: dict[str, str]) -> str:
        return headers.get("x-notion-verification-token", "")

    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        return _require(payload, "type", "notion")

    def extract_action(self, payload: dict[str, Any]) -> Optional[str]:
        event_type = payload.get("type", "")
        return event_type.rsplit(".", 1)[-1] if "." in event_type else None

    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        entity = payload.get("entity") or {}
        return entity.get("type", "unknown"), str(entity.get("id", ""))


class MondayWebhookHandler(BaseWebhookHandler):
    """Monday sends ``{"event": {...}}``; the type is inferred when absent."""

    provider = TrackerProvider.MONDAY
    signature_strategy = SignatureStrategy.NONE

    def extract_signature(self, headers: dict[str, str]) -> str:
        return headers.get("authorization", "")

    def _event(self, payload: dict[str, Any]) -> dict[str, Any]:
        event = _require(payload, "event", "monday")
        if not isinstance(event, dict):
            raise PayloadMalformed("Monday event must be an object", "monday")
        return event

    @staticmethod
    def infer_event_type(event: dict[str, Any]) -> str:
        item_id = event.get("itemId") or event.get("pulseId")
        if item_id and not event.get("columnId") and "previousValue" not in event:
            return "create_item"
        if event.get("columnType") == "color" or event.get("columnId") == "status":
            return "change_status_column_value"
        if event.get("columnId") and "value" in event:
            return "change_column_value"
        if event.get("updateId") and event.get("textBody"):
            return "create_update"
        return "unknown"

    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        event = self._event(payload)
        return event.get("type") or self.infer_event_type(event)

    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        event = self._event(payload)
        item_id = event.get("itemId") or event.get("pulseId")
        if item_id:
            return "item", str(item_id)
        return "board", str(event.get("boardId", ""))


class ClickUpWebhookHandler(BaseWebhookHandler):
    """ClickUp sends ``{"event", "task_id", "webhook_id", "history_items"}``."""

    provider = TrackerProvider.CLICKUP
    signature_strategy = SignatureStrategy.NONE

    def extract_signature(self, headers: dict[str, str]) -> str:
        return headers.get("x-signature", "")

    def extract_event_type(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        return _require(payload, "event", "clickup")

    def extract_resource(self, payload: dict[str, Any]) -> tuple[str, str]:
        task_id = payload.get("task_id")
        if task_id:
            return "task", str(task_id)
        return "webhook", str(payload.get("webhook_id", ""))


WEBHOOK_HANDLERS: dict[str, type[BaseWebhookHandler]] = {
    "linear": LinearWebhookHandler,
    "trello": TrelloWebhookHandler,
    "asana": AsanaWebhookHandler,
    "notion": NotionWebhookHandler,
    "monday": MondayWebhookHandler,
    "clickup": ClickUpWebhookHandler,
}


def build_webhook_handler(provider: Any, secret: str = "", **options: Any) -> BaseWebhookHandler:
    """Instantiate the receiver for ``provider``. Extra options go to the constructor."""
    key = provider_name(provider)
    handler_cls = WEBHOOK_HANDLERS.get(key)
    if handler_cls is None:
        raise ConfigurationError(f"No webhook handler for provider: {key}", key)
    return handler_cls(secret, **options)
