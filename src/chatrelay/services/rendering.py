"""Client-facing views of stored records.

Stored media URLs are relative paths under the media root; they are turned
into signed, expiring URLs only here, at response/broadcast time.
"""

from typing import Any
from urllib.parse import urljoin

from chatrelay.domain.messages import Message
from chatrelay.media.signed_url import SignedUrlCodec

MEDIA_URL_FIELDS = ("url", "thumbnail_url", "preview_url", "placeholder_url")


def _is_absolute(url: str) -> bool:
    return url.startswith(("http://", "https://"))


def render_message(message: Message, codec: SignedUrlCodec, ttl_seconds: int) -> dict[str, Any]:
    """Message as JSON-ready dict with media URLs signed for ``ttl_seconds``."""
    data = message.to_dict()
    media = data.get("media")
    if media:
        for key in MEDIA_URL_FIELDS:
            value = media.get(key)
            if value and not _is_absolute(value):
                media[key] = codec.sign(value, ttl_seconds)
    return data


def absolute_url(base_url: str, path: str) -> str:
    """Join a site base URL ("https://host[/prefix]") with an absolute path."""
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def request_base_url(headers: Any, fallback: str) -> str:
    """Public base URL of the current request, honoring reverse-proxy headers.

    Args:
        headers: Request headers (case-insensitive mapping).
        fallback: Base URL as seen by the server (request.base_url).
    """
    host = headers.get("x-forwarded-host") or headers.get("host")
    if not host:
        return fallback.rstrip("/")
    proto = headers.get("x-forwarded-proto") or fallback.split("://", 1)[0] or "https"
    # Proxies may append a chain: "https, http"
    proto = proto.split(",")[0].strip()
    host = host.split(",")[0].strip()
    return f"{proto}://{host}"
