"""Outbound sends.

The send path always persists the message. An upstream dispatch failure is
recorded as status "failed" instead of failing the request, so clients can
show "failed to send" without losing the record. Input problems (no body or
media, bad reply reference) are rejected before any dispatch.
"""

from dataclasses import dataclass
from typing import Any

from chatrelay.domain.messages import (
    Conversation,
    MediaDescriptor,
    MediaStorage,
    Message,
    canonical_phone,
)
from chatrelay.errors import NotFoundError, ProviderError, ValidationError
from chatrelay.infra.storage import Storage
from chatrelay.media.mime import extension_from_filename, media_type_for_extension, mime_from_extension
from chatrelay.media.signed_url import SignedUrlCodec, extract_relative_media_path
from chatrelay.media.store import MediaStore
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context
from chatrelay.realtime.hub import EVENT_MESSAGE_OUTGOING, BroadcastHub

from .rendering import absolute_url, render_message

logger = get_logger(__name__)


@dataclass(frozen=True)
class SendCommand:
    to: str | None = None
    conversation_id: str | None = None
    body: str | None = None
    media_url: str | None = None
    reply_to_message_id: str | None = None
    sent_by_user_id: str | None = None


def local_media_descriptor(relative_path: str) -> MediaDescriptor:
    """Ready descriptor for a file already stored under the media root."""
    extension = extension_from_filename(relative_path)
    return MediaDescriptor(
        origin="upload",
        type=media_type_for_extension(extension),  # type: ignore[arg-type]
        status="ready",
        provider="local",
        mime_type=mime_from_extension(extension),
        filename=relative_path.rsplit("/", 1)[-1],
        extension=extension,
        url=relative_path,
        storage=MediaStorage(original_path=relative_path),
    )


def external_media_descriptor(url: str) -> MediaDescriptor:
    extension = extension_from_filename(url.split("?", 1)[0].split("#", 1)[0].rsplit("/", 1)[-1])
    return MediaDescriptor(
        origin="upload",
        type=media_type_for_extension(extension),  # type: ignore[arg-type]
        status="ready",
        provider="external",
        mime_type=mime_from_extension(extension),
        extension=extension,
        url=url,
    )


class MessageSender:
    """Resolves, dispatches, persists and broadcasts outbound messages."""

    def __init__(
        self,
        adapter,
        storage: Storage,
        hub: BroadcastHub,
        codec: SignedUrlCodec,
        store: MediaStore,
        *,
        public_base_url: str = "",
        url_ttl_seconds: int = 900,
        provider_url_ttl_seconds: int = 3600,
    ) -> None:
        self.adapter = adapter
        self.storage = storage
        self.hub = hub
        self.codec = codec
        self.store = store
        self.public_base_url = public_base_url
        self.url_ttl_seconds = url_ttl_seconds
        self.provider_url_ttl_seconds = provider_url_ttl_seconds

    def _conversation(self, command: SendCommand) -> Conversation:
        if command.conversation_id:
            conversation = self.storage.get_conversation_by_id(command.conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found.")
            return conversation

        phone = canonical_phone(command.to)
        if not phone:
            raise ValidationError("to or conversationId is required")
        return self.storage.get_conversation_by_phone(phone) or self.storage.create_conversation(
            phone, created_by_user_id=command.sent_by_user_id
        )

    def _check_reply(self, conversation: Conversation, reply_to_message_id: str) -> None:
        target = self.storage.get_message_by_id(reply_to_message_id)
        if target is None:
            raise ValidationError("replyToMessageId does not reference a known message")
        if target.conversation_id != conversation.id:
            raise ValidationError("replyToMessageId belongs to another conversation")
        if target.direction != "inbound":
            raise ValidationError("replyToMessageId must reference an inbound message")

    def _media(self, media_url: str, base_url: str) -> tuple[MediaDescriptor, str]:
        """Descriptor to persist and the URL the provider will fetch."""
        relative = extract_relative_media_path(media_url)
        if relative is None:
            return external_media_descriptor(media_url), media_url

        if not self.store.exists(relative):
            raise ValidationError("media_url does not reference a stored file")
        signed = self.codec.sign(relative, self.provider_url_ttl_seconds)
        return local_media_descriptor(relative), absolute_url(self.public_base_url or base_url, signed)

    def send(self, command: SendCommand, *, base_url: str = "") -> Message:
        """Send one message and return it as persisted (status sent or failed).

        Args:
            command: What to send and to whom.
            base_url: Public base URL of the current request, used for media
                links when no public base URL is configured.

        Raises:
            ValidationError: Missing content, bad recipient or bad reply reference.
            NotFoundError: Unknown conversation id.
            ConfigurationError: Provider credentials are not configured.
        """
        body = (command.body or "").strip() or None
        media_url = (command.media_url or "").strip() or None
        if not body and not media_url:
            raise ValidationError("body or media_url is required")

        conversation = self._conversation(command)
        if command.reply_to_message_id:
            self._check_reply(conversation, command.reply_to_message_id)

        media: MediaDescriptor | None = None
        provider_url: str | None = None
        if media_url:
            media, provider_url = self._media(media_url, base_url)

        request = self.adapter.build_outbound_payload(conversation.phone, body, provider_url)
        log_ctx = safe_log_context(
            conversation_id=conversation.id,
            to_hash=hash_identifier(conversation.phone),
            kind=request.kind,
        )

        raw: dict[str, Any] = {"request": {"kind": request.kind}}
        provider_message_id = None
        try:
            result = self.adapter.dispatch(request)
        except ProviderError as exc:
            status = "failed"
            raw["error"] = {"message": exc.message, "status": exc.status}
            logger.warning("outbound dispatch failed, message stored as failed", extra={"extra_fields": log_ctx})
        else:
            status = "sent"
            provider_message_id = result.provider_message_id

        message = self.storage.create_message(
            conversation_id=conversation.id,
            direction="outbound",
            status=status,
            body=body,
            media=media,
            provider_message_id=provider_message_id,
            reply_to_message_id=command.reply_to_message_id,
            sent_by_user_id=command.sent_by_user_id,
            raw=raw,
        )
        self.storage.update_conversation_last_at(conversation.id, message.created_at)
        logger.info(
            "outbound message stored",
            extra={"extra_fields": {**log_ctx, "message_id": message.id, "status": status}},
        )

        self.hub.publish(EVENT_MESSAGE_OUTGOING, render_message(message, self.codec, self.url_ttl_seconds))
        return message
