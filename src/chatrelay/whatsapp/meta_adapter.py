"""Meta Cloud API adapter.

Single translation boundary between the WhatsApp Business Cloud API and the
service: webhook verification, payload normalization, outbound payload
construction and the HTTP calls (send, media metadata, media download).

Security: phone numbers and message text are never logged; only hashes,
lengths and ids.
"""

import hashlib
import hmac
import posixpath
from collections.abc import Iterator, Mapping
from typing import Any
from urllib.parse import urlsplit

import requests

from chatrelay.domain.messages import canonical_phone
from chatrelay.errors import AuthenticationError, ConfigurationError, ProviderError, ValidationError
from chatrelay.infra.time import from_epoch_seconds, utc_now
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import hash_identifier, safe_log_context

from .models import (
    DownloadedMedia,
    IncomingEvent,
    IncomingMedia,
    MediaMetadata,
    ProviderRequest,
    SendResult,
)

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="

MEDIA_KINDS = ("image", "video", "audio", "document")

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".avi", ".mkv", ".webm"})
AUDIO_EXTENSIONS = frozenset({".mp3", ".mpeg", ".ogg", ".wav", ".aac"})
DOCUMENT_EXTENSIONS = frozenset(
    {".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".csv"}
)


def _header(headers: Mapping[str, Any], name: str) -> str | None:
    """Case-insensitive header lookup over any mapping."""
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return value if isinstance(value, str) else str(value)
    return None


def check_signature(payload_bytes: bytes, signature_header: str | None, app_secret: str) -> None:
    """Verify the HMAC-SHA256 signature Meta puts on every webhook POST.

    Args:
        payload_bytes: Raw, unparsed request body.
        signature_header: X-Hub-Signature-256 value, normally ``sha256=<hex>``.
        app_secret: Meta App Secret.

    Raises:
        AuthenticationError: If the header is missing or does not match.
    """
    if not signature_header:
        raise AuthenticationError("missing signature header")

    supplied = signature_header.strip()
    if supplied.startswith(SIGNATURE_PREFIX):
        supplied = supplied[len(SIGNATURE_PREFIX):]

    expected = hmac.new(app_secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()

    try:
        matches = hmac.compare_digest(expected.encode("ascii"), supplied.encode("ascii"))
    except UnicodeEncodeError:
        matches = False

    if not matches:
        raise AuthenticationError("signature mismatch")


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _media_stub(kind: str, media: Any) -> IncomingMedia | None:
    if not isinstance(media, dict):
        return None
    return IncomingMedia(
        type=kind,  # type: ignore[arg-type]
        provider="meta",
        media_id=media.get("id") or media.get("media_id"),
        url=media.get("link"),
        mime_type=media.get("mime_type") or media.get("mimetype"),
        filename=media.get("filename"),
        sha256=media.get("sha256"),
        size_bytes=_as_int(media.get("file_size", media.get("filesize"))),
        width=_as_int(media.get("width")),
        height=_as_int(media.get("height")),
        duration_seconds=_as_float(media.get("duration")),
        page_count=_as_int(media.get("page_count")),
        metadata=media,
    )


def _list(value: Any) -> list:
    """The value if it is a list, else an empty one."""
    return value if isinstance(value, list) else []


def _profile_names(value: dict[str, Any]) -> dict[str, str]:
    names: dict[str, str] = {}
    for contact in _list(value.get("contacts")):
        if not isinstance(contact, dict):
            continue
        wa_id = contact.get("wa_id")
        profile = contact.get("profile")
        if wa_id and isinstance(profile, dict) and profile.get("name"):
            names[str(wa_id)] = str(profile["name"])
    return names


def _to_event(message: dict[str, Any], profile_names: dict[str, str]) -> IncomingEvent | None:
    sender = message.get("from")
    if not sender:
        logger.warning(
            "meta message without sender skipped",
            extra={"extra_fields": safe_log_context(message_id=message.get("id"))},
        )
        return None
    sender = str(sender)

    parsed_ts = from_epoch_seconds(message.get("timestamp"))
    timestamp = (parsed_ts or utc_now()).isoformat()

    message_type = message.get("type")
    body: str | None = None
    media: IncomingMedia | None = None
    kind = "unknown"

    if message_type == "text":
        kind = "text"
        text = message.get("text")
        body = text.get("body") if isinstance(text, dict) else None
    elif message_type in MEDIA_KINDS:
        media = _media_stub(message_type, message.get(message_type))
        if media is not None:
            kind = message_type
            if message_type != "audio":
                body = media.metadata.get("caption") if media.metadata else None
                if body is None:
                    body = message.get("caption")

    provider_id = message.get("id")
    return IncomingEvent(
        kind=kind,  # type: ignore[arg-type]
        sender=sender,
        timestamp=timestamp,
        provider_message_id=str(provider_id) if provider_id else None,
        body=body,
        media=media,
        profile_name=profile_names.get(sender),
        raw=message,
    )


def iter_events(payload: Any) -> Iterator[IncomingEvent]:
    """Yield canonical events from a webhook payload, in payload order.

    Meta payload structure:
    {
      "object": "whatsapp_business_account",
      "entry": [{
        "changes": [{
          "value": {
            "contacts": [{"wa_id": "PHONE", "profile": {"name": "..."}}],
            "messages": [{"from": "PHONE", "id": "wamid...", "timestamp": "1700000000",
                          "type": "text", "text": {"body": "..."}}]
          },
          "field": "messages"
        }]
      }]
    }

    Shapes that do not match (status callbacks, other objects) yield nothing.
    """
    if not isinstance(payload, dict):
        return

    for entry in _list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        for change in _list(entry.get("changes")):
            if not isinstance(change, dict):
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            messages = value.get("messages")
            if not isinstance(messages, list):
                continue
            names = _profile_names(value)
            for message in messages:
                if not isinstance(message, dict):
                    continue
                event = _to_event(message, names)
                if event is not None:
                    yield event


class NormalizedEvents:
    """Lazy view of the events in one payload.

    Iterating re-runs the (pure) normalization, so the sequence can be
    walked more than once.
    """

    def __init__(self, payload: Any) -> None:
        self._payload = payload

    def __iter__(self) -> Iterator[IncomingEvent]:
        return iter_events(self._payload)


def outbound_kind_for(media_url: str) -> str:
    """Pick the Meta message kind for a media link by its file extension.

    Unknown and missing extensions are sent as documents.
    """
    path = urlsplit(media_url).path if "://" in media_url else media_url.split("?")[0].split("#")[0]
    extension = posixpath.splitext(path)[1].lower()
    if extension in IMAGE_EXTENSIONS:
        return "image"
    if extension in VIDEO_EXTENSIONS:
        return "video"
    if extension in AUDIO_EXTENSIONS:
        return "audio"
    return "document"


def build_outbound_payload(
    recipient: str,
    body: str | None = None,
    media_url: str | None = None,
) -> ProviderRequest:
    """Build the Graph API request body for a text or media message.

    Raises:
        ValidationError: If neither body nor media_url is given, or the
            recipient has no digits.
    """
    clean_phone = canonical_phone(recipient)
    if not clean_phone:
        raise ValidationError("recipient phone number is required")

    payload: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": clean_phone,
    }

    if media_url:
        kind = outbound_kind_for(media_url)
        media: dict[str, Any] = {"link": media_url}
        if kind == "document":
            path = urlsplit(media_url).path if "://" in media_url else media_url.split("?")[0]
            media["filename"] = posixpath.basename(path) or "attachment"
        if body and kind != "audio":
            media["caption"] = body
        payload["type"] = kind
        payload[kind] = media
    elif body:
        kind = "text"
        payload["type"] = "text"
        payload["text"] = {"body": body}
    else:
        raise ValidationError("body or media_url is required")

    return ProviderRequest(kind=kind, recipient=clean_phone, payload=payload)  # type: ignore[arg-type]


class MetaAdapter:
    """Provider adapter bound to one set of Meta credentials."""

    provider_name = "meta"

    def __init__(
        self,
        *,
        access_token: str = "",
        phone_number_id: str = "",
        verify_token: str = "",
        app_secret: str = "",
        graph_api_version: str = "v19.0",
        timeout: float = 30.0,
    ) -> None:
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.verify_token = verify_token
        self.app_secret = app_secret
        self.graph_api_version = graph_api_version
        self.timeout = timeout

        if not access_token or not phone_number_id:
            logger.warning("meta credentials not configured, outbound sends will fail")

    @classmethod
    def from_settings(cls, settings: Any) -> "MetaAdapter":
        return cls(
            access_token=settings.meta_access_token,
            phone_number_id=settings.meta_phone_number_id,
            verify_token=settings.meta_verify_token,
            app_secret=settings.meta_app_secret,
            graph_api_version=settings.meta_graph_api_version,
            timeout=settings.http_timeout_seconds,
        )

    # -- inbound ---------------------------------------------------------

    def verify_challenge(self, query: Mapping[str, Any]) -> bool:
        """True iff hub.mode is subscribe and hub.verify_token matches."""
        mode = query.get("hub.mode")
        token = query.get("hub.verify_token")
        if not self.verify_token or not isinstance(mode, str):
            return False
        return mode.lower() == "subscribe" and isinstance(token, str) and hmac.compare_digest(
            token.encode("utf-8"), self.verify_token.encode("utf-8")
        )

    def verify_signature(self, headers: Mapping[str, Any], raw_body: bytes) -> bool:
        """Check X-Hub-Signature-256 against the raw body.

        Without a configured app secret the check is bypassed (reduced
        security mode). With a secret, a missing header fails.
        """
        if not self.app_secret:
            logger.warning("META_APP_SECRET not configured, webhook signature check bypassed")
            return True

        try:
            check_signature(raw_body, _header(headers, SIGNATURE_HEADER), self.app_secret)
        except AuthenticationError as exc:
            logger.warning(
                "meta signature verification failed",
                extra={"extra_fields": safe_log_context(reason=exc.message)},
            )
            return False
        return True

    def normalize(self, payload: Any) -> NormalizedEvents:
        return NormalizedEvents(payload)

    # -- outbound --------------------------------------------------------

    def build_outbound_payload(
        self, recipient: str, body: str | None = None, media_url: str | None = None
    ) -> ProviderRequest:
        return build_outbound_payload(recipient, body, media_url)

    def _require_token(self) -> None:
        if not self.access_token:
            raise ConfigurationError("Meta access token is not configured (META_ACCESS_TOKEN)")

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _get(self, url: str, what: str) -> requests.Response:
        try:
            response = requests.get(url, headers=self._auth_headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to {what}: {type(exc).__name__}") from exc
        if not response.ok:
            raise ProviderError(
                f"Failed to {what} ({response.status_code}): {response.text}",
                status=response.status_code,
                body=response.text,
            )
        return response

    def dispatch(self, request: ProviderRequest) -> SendResult:
        """POST a message to the Graph API.

        Raises:
            ConfigurationError: If token or phone number id is missing.
            ProviderError: On network failure or any non-2xx response.
        """
        if not self.access_token or not self.phone_number_id:
            raise ConfigurationError(
                "Meta credentials not configured: META_ACCESS_TOKEN and META_PHONE_NUMBER_ID required"
            )

        url = f"{GRAPH_BASE_URL}/{self.graph_api_version}/{self.phone_number_id}/messages"
        log_ctx = safe_log_context(
            to_hash=hash_identifier(request.recipient),
            kind=request.kind,
            provider="meta",
        )
        logger.info("sending outbound message via meta", extra={"extra_fields": log_ctx})

        try:
            response = requests.post(
                url,
                json=request.payload,
                headers={**self._auth_headers(), "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error(
                "outbound send via meta failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(exc).__name__}},
            )
            raise ProviderError(f"Meta API unreachable: {type(exc).__name__}") from exc

        if not response.ok:
            logger.error(
                "outbound send via meta rejected",
                extra={"extra_fields": {**log_ctx, "status": response.status_code}},
            )
            raise ProviderError(
                f"Meta API error ({response.status_code}): {response.text}",
                status=response.status_code,
                body=response.text,
            )

        data = response.json() if response.content else {}
        messages = data.get("messages") if isinstance(data, dict) else None
        provider_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            provider_id = messages[0].get("id")

        logger.info("outbound message sent via meta", extra={"extra_fields": log_ctx})
        return SendResult(provider_message_id=provider_id, status="sent")

    def fetch_media_metadata(self, media_id: str) -> MediaMetadata:
        """Resolve a media id into a short-lived download URL plus file facts."""
        self._require_token()
        response = self._get(
            f"{GRAPH_BASE_URL}/{self.graph_api_version}/{media_id}", "fetch media metadata"
        )
        data = response.json()
        if not isinstance(data, dict) or not data.get("url"):
            raise ProviderError("Media metadata response has no url", status=response.status_code)
        return MediaMetadata(
            id=str(data.get("id") or media_id),
            url=str(data["url"]),
            mime_type=data.get("mime_type"),
            sha256=data.get("sha256"),
            file_size=_as_int(data.get("file_size")),
            width=_as_int(data.get("width")),
            height=_as_int(data.get("height")),
        )

    def download_media(self, url: str) -> DownloadedMedia:
        """Download media bytes from a provider-hosted URL."""
        self._require_token()
        response = self._get(url, "download media")
        return DownloadedMedia(
            content=response.content,
            content_type=response.headers.get("Content-Type"),
        )
