"""Conversation, message and media descriptor records.

The media descriptor is embedded in a message and is the only part of a
message that changes after creation. Its status machine only moves forward:

    pending -> downloading -> ready
                           -> failed
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

from chatrelay.errors import InvalidMediaTransition
from chatrelay.infra.time import isoformat

Direction = Literal["inbound", "outbound"]
MessageStatus = Literal["received", "sent", "failed"]
MediaOrigin = Literal["whatsapp", "upload"]
MediaType = Literal["image", "video", "audio", "document", "unknown"]
MediaStatus = Literal["pending", "downloading", "ready", "failed"]

MEDIA_TYPES: tuple[str, ...] = ("image", "video", "audio", "document", "unknown")

_STATUS_RANK = {"pending": 0, "downloading": 1, "ready": 2, "failed": 2}
_TERMINAL = frozenset({"ready", "failed"})


def canonical_phone(value: str | None) -> str:
    """Digits-only form of a phone number; the unique key of a conversation."""
    return "".join(ch for ch in (value or "") if ch.isdigit())


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class MediaStorage:
    """Relative paths (under the media root) of the stored files."""

    original_path: str | None = None
    thumbnail_path: str | None = None
    preview_path: str | None = None
    placeholder_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_path": self.original_path,
            "thumbnail_path": self.thumbnail_path,
            "preview_path": self.preview_path,
            "placeholder_path": self.placeholder_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MediaStorage | None:
        if not data:
            return None
        return cls(
            original_path=data.get("original_path"),
            thumbnail_path=data.get("thumbnail_path"),
            preview_path=data.get("preview_path"),
            placeholder_path=data.get("placeholder_path"),
        )


@dataclass(frozen=True)
class MediaDescriptor:
    """Provenance, shape and acquisition state of one attachment.

    ``url``, ``thumbnail_url``, ``preview_url`` and ``placeholder_url`` are
    relative storage paths; they become signed URLs only when a message is
    rendered for a client.
    """

    origin: MediaOrigin
    type: MediaType
    status: MediaStatus
    provider: str | None = None
    provider_media_id: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    extension: str | None = None
    size_bytes: int | None = None
    checksum: str | None = None
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None
    page_count: int | None = None
    url: str | None = None
    thumbnail_url: str | None = None
    preview_url: str | None = None
    placeholder_url: str | None = None
    storage: MediaStorage | None = None
    download_attempts: int = 0
    download_error: str | None = None
    downloaded_at: datetime | None = None
    thumbnail_generated_at: datetime | None = None
    metadata: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    def advance(self, status: MediaStatus, **changes: Any) -> MediaDescriptor:
        """Return a copy moved to ``status`` with ``changes`` applied.

        Raises:
            InvalidMediaTransition: If the move would leave a terminal state,
                go backwards, decrease the attempt counter, or reach ``ready``
                without a url.
        """
        if status not in _STATUS_RANK:
            raise InvalidMediaTransition(f"unknown media status: {status}")
        if self.is_terminal:
            raise InvalidMediaTransition(f"media already {self.status}, cannot move to {status}")
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise InvalidMediaTransition(f"media cannot move from {self.status} back to {status}")

        attempts = changes.get("download_attempts", self.download_attempts)
        if attempts < self.download_attempts:
            raise InvalidMediaTransition("download_attempts cannot decrease")

        updated = replace(self, status=status, **changes)

        if status == "ready":
            if not updated.url:
                raise InvalidMediaTransition("ready media requires a url")
        elif updated.url is not None:
            updated = replace(updated, url=None)

        return updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "type": self.type,
            "status": self.status,
            "provider": self.provider,
            "provider_media_id": self.provider_media_id,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "extension": self.extension,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "width": self.width,
            "height": self.height,
            "duration_seconds": self.duration_seconds,
            "page_count": self.page_count,
            "url": self.url,
            "thumbnail_url": self.thumbnail_url,
            "preview_url": self.preview_url,
            "placeholder_url": self.placeholder_url,
            "storage": self.storage.to_dict() if self.storage else None,
            "download_attempts": self.download_attempts,
            "download_error": self.download_error,
            "downloaded_at": isoformat(self.downloaded_at),
            "thumbnail_generated_at": isoformat(self.thumbnail_generated_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MediaDescriptor | None:
        if not data:
            return None
        media_type = data.get("type") or "unknown"
        return cls(
            origin=data.get("origin") or "whatsapp",
            type=media_type if media_type in MEDIA_TYPES else "unknown",
            status=data.get("status") or "pending",
            provider=data.get("provider"),
            provider_media_id=data.get("provider_media_id"),
            mime_type=data.get("mime_type"),
            filename=data.get("filename"),
            extension=data.get("extension"),
            size_bytes=data.get("size_bytes"),
            checksum=data.get("checksum"),
            width=data.get("width"),
            height=data.get("height"),
            duration_seconds=data.get("duration_seconds"),
            page_count=data.get("page_count"),
            url=data.get("url"),
            thumbnail_url=data.get("thumbnail_url"),
            preview_url=data.get("preview_url"),
            placeholder_url=data.get("placeholder_url"),
            storage=MediaStorage.from_dict(data.get("storage")),
            download_attempts=int(data.get("download_attempts") or 0),
            download_error=data.get("download_error"),
            downloaded_at=_parse_dt(data.get("downloaded_at")),
            thumbnail_generated_at=_parse_dt(data.get("thumbnail_generated_at")),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    phone: str
    display_name: str | None = None
    last_at: datetime | None = None
    archived: bool = False
    created_by_user_id: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phone": self.phone,
            "display_name": self.display_name,
            "last_at": isoformat(self.last_at),
            "archived": self.archived,
            "created_by_user_id": self.created_by_user_id,
            "created_at": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    direction: Direction
    status: MessageStatus
    body: str | None = None
    media: MediaDescriptor | None = None
    provider_message_id: str | None = None
    reply_to_message_id: str | None = None
    sent_by_user_id: str | None = None
    raw: dict[str, Any] | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "direction": self.direction,
            "status": self.status,
            "body": self.body,
            "media": self.media.to_dict() if self.media else None,
            "provider_message_id": self.provider_message_id,
            "reply_to_message_id": self.reply_to_message_id,
            "sent_by_user_id": self.sent_by_user_id,
            "created_at": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class WebhookEvent:
    """Append-only audit record of one inbound webhook call."""

    id: str
    headers: dict[str, Any] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    response: dict[str, Any] = field(default_factory=dict)
    webhook_id: str | None = None
    instance_id: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "instance_id": self.instance_id,
            "headers": self.headers,
            "query": self.query,
            "body": self.body,
            "response": self.response,
            "created_at": isoformat(self.created_at),
        }
