"""Canonical provider-side shapes.

The adapter is the only place that looks at raw provider JSON; everything
downstream works with these records.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

EventKind = Literal["text", "image", "video", "audio", "document", "unknown"]
OutboundKind = Literal["text", "image", "video", "audio", "document"]


@dataclass(frozen=True)
class IncomingMedia:
    """Media stub as announced by the provider, before any download."""

    type: Literal["image", "video", "audio", "document"]
    provider: str = "meta"
    media_id: str | None = None
    url: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    sha256: str | None = None
    size_bytes: int | None = None
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None
    page_count: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class IncomingEvent:
    """One inbound message, tagged by ``kind``.

    ``media`` is set exactly when ``kind`` is one of the media kinds;
    ``timestamp`` is an ISO-8601 UTC string.
    """

    kind: EventKind
    sender: str
    timestamp: str
    provider_message_id: str | None = None
    body: str | None = None
    media: IncomingMedia | None = None
    profile_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderRequest:
    """Outbound message ready to be posted to the provider."""

    kind: OutboundKind
    recipient: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class SendResult:
    provider_message_id: str | None
    status: str = "sent"


@dataclass(frozen=True)
class MediaMetadata:
    """Resolved media metadata (short-lived download URL plus file facts)."""

    id: str
    url: str
    mime_type: str | None = None
    sha256: str | None = None
    file_size: int | None = None
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class DownloadedMedia:
    content: bytes
    content_type: str | None = None
