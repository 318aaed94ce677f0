"""FastAPI application factory.

Builds every collaborator once (storage, adapter, hub, codec, media store,
media queue, ingestor, sender), stores them on ``app.state`` and mounts the
routers. Tests pass their own storage/adapter/settings.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chatrelay.config import Settings, load_settings
from chatrelay.errors import ChatRelayError
from chatrelay.infra.storage import Storage, create_storage
from chatrelay.media.pipeline import MediaPipeline
from chatrelay.media.signed_url import SignedUrlCodec
from chatrelay.media.store import MediaStore
from chatrelay.media.work_queue import MediaWorkQueue
from chatrelay.observability.correlation import (
    CORRELATION_ID_HEADER,
    bind_correlation_id,
    new_correlation_id,
    unbind_correlation_id,
)
from chatrelay.observability.logging import get_logger
from chatrelay.realtime.hub import EVENT_MESSAGE_MEDIA_UPDATED, BroadcastHub
from chatrelay.services.ingestion import WebhookIngestor
from chatrelay.services.outbound import MessageSender
from chatrelay.services.rendering import render_message
from chatrelay.whatsapp.meta_adapter import MetaAdapter

from .routers import public
from .routes import conversations, media, messages, realtime, webhook_events, webhooks_whatsapp_meta

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    storage: Storage | None = None,
    adapter=None,
    hub: BroadcastHub | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        settings: Resolved settings; read from the environment if None.
        storage: Storage backend; built from STORAGE_BACKEND if None.
        adapter: Provider adapter; a MetaAdapter from settings if None.
        hub: Broadcast hub; a fresh one if None.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        settings = load_settings()
    if storage is None:
        storage = create_storage(settings.storage_backend, settings.database_url)
    if adapter is None:
        adapter = MetaAdapter.from_settings(settings)
    if hub is None:
        hub = BroadcastHub()

    codec = SignedUrlCodec(settings.media_signing_secret)
    media_store = MediaStore(settings.media_root)
    media_store.ensure_directories()

    def on_media_status(message) -> None:
        hub.publish(
            EVENT_MESSAGE_MEDIA_UPDATED,
            render_message(message, codec, settings.media_url_ttl_seconds),
        )

    pipeline = MediaPipeline(
        storage,
        adapter,
        media_store,
        max_attempts=settings.media_download_attempts,
        on_status_change=on_media_status,
    )
    media_queue = MediaWorkQueue(
        pipeline.run,
        workers=settings.media_workers,
        maxsize=settings.media_queue_size,
    )
    ingestor = WebhookIngestor(
        adapter,
        storage,
        hub,
        codec,
        url_ttl_seconds=settings.media_url_ttl_seconds,
        enqueue_media=media_queue.submit,
    )
    sender = MessageSender(
        adapter,
        storage,
        hub,
        codec,
        media_store,
        public_base_url=settings.public_base_url,
        url_ttl_seconds=settings.media_url_ttl_seconds,
        provider_url_ttl_seconds=settings.media_provider_url_ttl_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "chatrelay started",
            extra={"extra_fields": {
                "webhook_path": settings.webhook_path,
                "storage_backend": settings.storage_backend,
            }},
        )
        yield
        media_queue.shutdown()

    app = FastAPI(
        title="chatrelay",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.storage = storage
    app.state.adapter = adapter
    app.state.hub = hub
    app.state.codec = codec
    app.state.media_store = media_store
    app.state.pipeline = pipeline
    app.state.media_queue = media_queue
    app.state.ingestor = ingestor
    app.state.sender = sender

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or new_correlation_id()
        token = bind_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            unbind_correlation_id(token)

    @app.exception_handler(ChatRelayError)
    async def chatrelay_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "request failed",
                extra={"extra_fields": {"path": request.url.path, "error_type": type(exc).__name__}},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    app.include_router(public.router)
    app.include_router(webhooks_whatsapp_meta.create_router(settings.webhook_path))
    app.include_router(messages.router)
    app.include_router(conversations.router)
    app.include_router(webhook_events.router)
    app.include_router(media.router)
    app.include_router(realtime.router)

    return app
