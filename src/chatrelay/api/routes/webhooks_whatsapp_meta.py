"""WhatsApp webhook routes - Meta Cloud API.

The path is configurable (META_WEBHOOK_PATH), so the router is built per app
by create_router(). GET is the subscription handshake, POST delivers events,
any other method is 405.

The signature is checked against the raw request body; the body is read
once as bytes and never re-serialized before verification.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool

from chatrelay.api.deps import get_ingestor
from chatrelay.services.ingestion import WebhookIngestor, WebhookResponse

_OTHER_METHODS = ["PUT", "PATCH", "DELETE"]


def _to_response(result: WebhookResponse) -> Response:
    return Response(
        status_code=result.status_code,
        content=result.content,
        media_type=result.media_type,
    )


async def meta_webhook_verify(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> Response:
    """Meta webhook verification (hub.mode / hub.verify_token / hub.challenge)."""
    result = await run_in_threadpool(
        ingestor.handle_verification, dict(request.query_params), dict(request.headers)
    )
    return _to_response(result)


async def meta_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> Response:
    """Receive a Meta Cloud API event delivery.

    Storage and broadcast calls block, so the ingestor runs in the
    threadpool; events in one delivery are applied in payload order.
    """
    body_bytes = await request.body()
    result = await run_in_threadpool(
        ingestor.handle_event, dict(request.headers), dict(request.query_params), body_bytes
    )
    return _to_response(result)


async def method_not_allowed() -> Response:
    return Response(
        status_code=405,
        content='{"error": "Method not allowed"}',
        media_type="application/json",
        headers={"Allow": "GET, POST"},
    )


def create_router(path: str) -> APIRouter:
    """Router serving the webhook at ``path`` (already normalized)."""
    router = APIRouter(tags=["webhooks"])
    router.add_api_route(path, meta_webhook_verify, methods=["GET"])
    router.add_api_route(path, meta_webhook, methods=["POST"])
    router.add_api_route(path, method_not_allowed, methods=_OTHER_METHODS)
    return router
