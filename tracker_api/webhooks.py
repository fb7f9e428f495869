"""Inbound webhook router.

One endpoint per provider. The raw body and headers are handed to the
provider's BaseWebhookHandler untouched (signatures cover the exact bytes)
and its response is returned verbatim.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from tracker_core.integrations.webhooks import BaseWebhookHandler, WebhookRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def get_webhook_handlers(request: Request) -> dict[str, BaseWebhookHandler]:
    return request.app.state.webhook_handlers


@router.get("")
async def list_providers(handlers: dict = Depends(get_webhook_handlers)):
    return {"providers": sorted(handlers)}


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    handlers: dict = Depends(get_webhook_handlers),
) -> Response:
    handler = handlers.get(provider.lower())
    if handler is None:
        logger.warning("Webhook for unknown provider", extra={"provider": provider})
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    body = (await request.body()).decode("utf-8", errors="replace")
    result = await handler.handle_request(
        WebhookRequest(body=body, headers=dict(request.headers))
    )
    return Response(content=result.body, status_code=result.status, headers=result.headers)
