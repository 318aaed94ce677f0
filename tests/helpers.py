"""Shared test helpers (plain functions and classes, not fixtures)."""

from __future__ import annotations

import hashlib
import hmac
import io
import json
import threading

from PIL import Image

from chatrelay.errors import ProviderError
from chatrelay.whatsapp.meta_adapter import MetaAdapter
from chatrelay.whatsapp.models import DownloadedMedia, MediaMetadata, SendResult

VERIFY_TOKEN = "verify-me"
SIGNING_SECRET = "test-signing-secret"


class RecordingObserver:
    """Observer that keeps every envelope it receives."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.texts: list[str] = []

    def send(self, text: str) -> None:
        with self._lock:
            self.texts.append(text)

    @property
    def envelopes(self) -> list[dict]:
        with self._lock:
            return [json.loads(t) for t in self.texts]

    def events(self, name: str) -> list[dict]:
        return [e["data"] for e in self.envelopes if e["event"] == name]


class BrokenObserver:
    def send(self, text: str) -> None:
        raise ConnectionError("socket closed")


def sign_body(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def text_message(
    message_id: str = "wamid.TEXT001",
    sender: str = "5511888888888",
    body: str = "hello",
    timestamp: str = "1704067200",
) -> dict:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }


def image_message(
    message_id: str = "wamid.IMG001",
    sender: str = "5511888888888",
    media_id: str = "media-001",
    caption: str | None = "look",
) -> dict:
    image = {"id": media_id, "mime_type": "image/jpeg", "sha256": "abc"}
    if caption is not None:
        image["caption"] = caption
    return {
        "from": sender,
        "id": message_id,
        "timestamp": "1704067200",
        "type": "image",
        "image": image,
    }


def webhook_payload(*messages: dict, profile_name: str | None = "Test User") -> dict:
    value: dict = {
        "messaging_product": "whatsapp",
        "metadata": {"phone_number_id": "123456789"},
        "messages": list(messages),
    }
    if profile_name and messages:
        value["contacts"] = [{"wa_id": messages[0]["from"], "profile": {"name": profile_name}}]
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}],
    }


def png_bytes(size: tuple[int, int] = (640, 480), color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeAdapter(MetaAdapter):
    """MetaAdapter with the network calls replaced by recorded fakes.

    Inbound verification and normalization are the real implementation.
    """

    def __init__(self, **kwargs) -> None:
        kwargs.setdefault("access_token", "test-token")
        kwargs.setdefault("phone_number_id", "123456789")
        kwargs.setdefault("verify_token", VERIFY_TOKEN)
        super().__init__(**kwargs)
        self.dispatched = []
        self.metadata_calls = []
        self.download_calls = []
        self.dispatch_error: Exception | None = None
        self.download_errors: list[Exception] = []
        self.media_content = png_bytes()
        self.media_content_type = "image/png"

    def dispatch(self, request):
        self.dispatched.append(request)
        if self.dispatch_error is not None:
            raise self.dispatch_error
        return SendResult(provider_message_id=f"wamid.OUT{len(self.dispatched)}")

    def fetch_media_metadata(self, media_id):
        self.metadata_calls.append(media_id)
        return MediaMetadata(
            id=media_id,
            url=f"https://lookaside.example.com/{media_id}",
            mime_type=self.media_content_type,
        )

    def download_media(self, url):
        self.download_calls.append(url)
        if self.download_errors:
            raise self.download_errors.pop(0)
        return DownloadedMedia(content=self.media_content, content_type=self.media_content_type)


def transient_error() -> ProviderError:
    return ProviderError("upstream unavailable", status=503, body="busy")
