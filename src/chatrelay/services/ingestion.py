"""Webhook ingestion: verify, normalize, deduplicate, persist, notify.

Protocol rules:
- A POST whose payload yields no events is acknowledged with 200
  ("ok - no events"); a non-2xx answer makes Meta redeliver forever.
- A provider message id that is already stored is skipped without touching
  any state, so redelivered payloads are absorbed.
- A persistence failure answers 500 so Meta retries; the retry is absorbed
  by the dedup check above.
- Every call, successful or not, appends exactly one WebhookEvent.

Security: phone numbers and message text are never logged.
"""

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from chatrelay.domain.messages import MediaDescriptor, canonical_phone
from chatrelay.errors import DuplicateEvent
from chatrelay.infra.storage import Storage
from chatrelay.media.mime import extension_from_filename, extension_from_mime, normalize_mime_type
from chatrelay.media.pipeline import MediaJob, job_for_message
from chatrelay.media.signed_url import SignedUrlCodec
from chatrelay.observability.correlation import get_correlation_id
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context
from chatrelay.realtime.hub import EVENT_MESSAGE_INCOMING, BroadcastHub
from chatrelay.whatsapp.models import IncomingEvent, IncomingMedia

from .rendering import render_message

logger = get_logger(__name__)

VERIFICATION_INFO = (
    "WhatsApp webhook endpoint. Meta verifies it with a GET carrying "
    "hub.mode=subscribe, hub.verify_token and hub.challenge; events are "
    "delivered by POST with an X-Hub-Signature-256 header."
)

_AUDIT_HEADER_DENYLIST = frozenset({"authorization", "cookie", "x-api-key"})
_RAW_BODY_AUDIT_LIMIT = 4096


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    content: str
    media_type: str = "text/plain"

    @classmethod
    def error(cls, status_code: int, message: str) -> "WebhookResponse":
        return cls(status_code, json.dumps({"error": message}), "application/json")


def _audit_headers(headers: Mapping[str, Any]) -> dict[str, Any]:
    return {
        str(k).lower(): v
        for k, v in headers.items()
        if str(k).lower() not in _AUDIT_HEADER_DENYLIST
    }


def pending_descriptor(media: IncomingMedia) -> MediaDescriptor:
    """Pending descriptor for an announced attachment; no network access."""
    mime_type = normalize_mime_type(media.mime_type)
    extension = extension_from_mime(mime_type) or extension_from_filename(media.filename)

    metadata: dict[str, Any] = {"whatsapp": media.metadata or {}}
    if media.url:
        metadata["source_url"] = media.url

    return MediaDescriptor(
        origin="whatsapp",
        type=media.type,
        status="pending",
        provider=media.provider,
        provider_media_id=media.media_id,
        mime_type=mime_type,
        filename=media.filename,
        extension=extension,
        size_bytes=media.size_bytes,
        checksum=media.sha256,
        width=media.width,
        height=media.height,
        duration_seconds=media.duration_seconds,
        page_count=media.page_count,
        metadata=metadata,
    )


class WebhookIngestor:
    """Handles GET verification and POST event delivery for one adapter.

    Args:
        adapter: Provider adapter (verify_challenge, verify_signature, normalize).
        storage: Storage collaborator.
        hub: Broadcast hub notified with ``message_incoming``.
        codec: Signer for media URLs in broadcasts.
        url_ttl_seconds: TTL of signed URLs in broadcasts.
        enqueue_media: Hands a pending media job to the acquisition queue;
            returns False when the job was refused.
    """

    def __init__(
        self,
        adapter,
        storage: Storage,
        hub: BroadcastHub,
        codec: SignedUrlCodec,
        *,
        url_ttl_seconds: int = 900,
        enqueue_media: Callable[[MediaJob], bool] | None = None,
    ) -> None:
        self.adapter = adapter
        self.storage = storage
        self.hub = hub
        self.codec = codec
        self.url_ttl_seconds = url_ttl_seconds
        self.enqueue_media = enqueue_media

    # -- audit -----------------------------------------------------------

    def _audit(
        self,
        headers: Mapping[str, Any],
        query: Mapping[str, Any],
        body: Any,
        status_code: int,
        summary: Any,
    ) -> None:
        self.storage.log_webhook_event(
            headers=_audit_headers(headers),
            query=dict(query),
            body=body,
            response={"status": status_code, "summary": summary},
        )

    def _audit_quietly(self, *args: Any) -> None:
        """Audit on paths whose HTTP answer must not change if the log fails."""
        try:
            self._audit(*args)
        except Exception:
            logger.exception("webhook audit append failed")

    # -- GET -------------------------------------------------------------

    def handle_verification(
        self, query: Mapping[str, Any], headers: Mapping[str, Any]
    ) -> WebhookResponse:
        """Meta subscription handshake, or an informational answer for probes."""
        mode = query.get("hub.mode")
        challenge = query.get("hub.challenge")
        is_attempt = isinstance(mode, str) and mode.lower() == "subscribe" and bool(challenge)

        if not is_attempt:
            logger.info("webhook probe answered", extra={"extra_fields": {"has_mode": bool(mode)}})
            return WebhookResponse(200, VERIFICATION_INFO)

        if not self.adapter.verify_token:
            logger.error("META_VERIFY_TOKEN not configured, verification refused")
            response = WebhookResponse.error(500, "Webhook verify token is not configured")
            self._audit_quietly(headers, query, None, 500, "verify token not configured")
            return response

        if not self.adapter.verify_challenge(query):
            logger.warning("meta webhook verification failed: token mismatch")
            self._audit_quietly(headers, query, None, 403, "verify token mismatch")
            return WebhookResponse(403, "Forbidden")

        logger.info("meta webhook verification successful")
        self._audit_quietly(headers, query, None, 200, "verified")
        return WebhookResponse(200, str(challenge))

    # -- POST ------------------------------------------------------------

    def handle_event(
        self,
        headers: Mapping[str, Any],
        query: Mapping[str, Any],
        raw_body: bytes,
    ) -> WebhookResponse:
        """Apply one webhook delivery. Events are processed in payload order."""
        # 1. Signature over the raw bytes, before any parsing
        if not self.adapter.verify_signature(headers, raw_body):
            self._audit_quietly(headers, query, None, 401, "invalid signature")
            return WebhookResponse.error(401, "Invalid signature")

        # 2. Parse JSON
        try:
            payload = json.loads(raw_body or b"null")
        except ValueError:
            logger.warning("invalid json body", extra={"extra_fields": {"bytes": len(raw_body)}})
            raw_text = raw_body[:_RAW_BODY_AUDIT_LIMIT].decode("utf-8", errors="replace")
            self._audit_quietly(headers, query, {"raw": raw_text}, 400, "invalid json")
            return WebhookResponse.error(400, "Invalid JSON")

        # 3. Normalize and apply each event
        outcomes: list[dict[str, Any]] = []
        try:
            for event in self.adapter.normalize(payload):
                outcomes.append(self._apply(event))

            if not outcomes:
                logger.info("webhook without message events acknowledged")
                self._audit(headers, query, payload, 200, "no events")
                return WebhookResponse(200, "ok - no events")

            self._audit(headers, query, payload, 200, outcomes)
        except Exception as exc:
            logger.exception(
                "webhook processing failed",
                extra={"extra_fields": {"applied": len(outcomes), "error_type": type(exc).__name__}},
            )
            self._audit_quietly(
                headers, query, payload, 500, {"error": type(exc).__name__, "applied": outcomes}
            )
            return WebhookResponse.error(500, "Internal error")

        return WebhookResponse(200, "ok")

    def _apply(self, event: IncomingEvent) -> dict[str, Any]:
        log_ctx = safe_log_context(
            provider_message_id=event.provider_message_id,
            sender_hash=hash_identifier(event.sender),
            kind=event.kind,
        )

        # Dedup on the provider id
        if event.provider_message_id:
            existing = self.storage.get_message_by_provider_message_id(event.provider_message_id)
            if existing is not None:
                logger.info("duplicate provider message skipped", extra={"extra_fields": log_ctx})
                return {"status": "duplicate", "message_id": existing.id}

        phone = canonical_phone(event.sender) or event.sender
        conversation = self.storage.get_conversation_by_phone(phone)
        if conversation is None:
            conversation = self.storage.create_conversation(phone, display_name=event.profile_name)
            logger.info(
                "conversation created",
                extra={"extra_fields": {**log_ctx, "conversation_id": conversation.id}},
            )

        media = pending_descriptor(event.media) if event.media is not None else None

        try:
            message = self.storage.create_message(
                conversation_id=conversation.id,
                direction="inbound",
                status="received",
                body=event.body,
                media=media,
                provider_message_id=event.provider_message_id,
                raw=event.raw,
            )
        except DuplicateEvent:
            # Concurrent redelivery won the insert race
            logger.info("duplicate provider message skipped", extra={"extra_fields": log_ctx})
            return {"status": "duplicate", "provider_message_id": event.provider_message_id}

        self.storage.update_conversation_last_at(conversation.id, message.created_at)
        logger.info(
            "inbound message stored",
            extra={"extra_fields": {**log_ctx, "message_id": message.id}},
        )

        self.hub.publish(
            EVENT_MESSAGE_INCOMING, render_message(message, self.codec, self.url_ttl_seconds)
        )

        job = job_for_message(message, get_correlation_id())
        if job is not None and self.enqueue_media is not None:
            if not self.enqueue_media(job):
                logger.warning(
                    "media job not queued, media stays pending",
                    extra={"extra_fields": {**log_ctx, "message_id": message.id}},
                )

        return {"status": "created", "message_id": message.id}
