"""Tests for X-Hub-Signature-256 enforcement on the webhook POST."""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from chatrelay.api.factory import create_app
from chatrelay.whatsapp.meta_adapter import MetaAdapter, check_signature
from chatrelay.errors import AuthenticationError

from helpers import FakeAdapter, sign_body, text_message, webhook_payload

SECRET = "app-secret"


@pytest.fixture
def signed_client(settings, storage, hub):
    app = create_app(settings, storage=storage, adapter=FakeAdapter(app_secret=SECRET), hub=hub)
    yield TestClient(app)
    app.state.media_queue.shutdown(timeout=5)


def _body() -> bytes:
    return json.dumps(webhook_payload(text_message())).encode()


class TestCheckSignature:
    def test_valid_with_prefix(self):
        body = b'{"a": 1}'
        check_signature(body, sign_body(body, SECRET), SECRET)

    def test_valid_without_prefix(self):
        body = b'{"a": 1}'
        check_signature(body, sign_body(body, SECRET)[len("sha256="):], SECRET)

    def test_mismatch(self):
        with pytest.raises(AuthenticationError):
            check_signature(b"{}", sign_body(b"{ }", SECRET), SECRET)

    def test_missing_header(self):
        with pytest.raises(AuthenticationError):
            check_signature(b"{}", None, SECRET)


class TestVerifySignaturePolicy:
    def test_no_secret_bypasses(self):
        assert MetaAdapter().verify_signature({}, b"{}")

    def test_secret_and_missing_header_fails(self):
        assert not MetaAdapter(app_secret=SECRET).verify_signature({}, b"{}")

    def test_header_lookup_is_case_insensitive(self):
        body = b"{}"
        headers = {"x-hub-signature-256": sign_body(body, SECRET)}
        assert MetaAdapter(app_secret=SECRET).verify_signature(headers, body)


class TestWebhookSignature:
    def test_absent_signature_rejected(self, signed_client, storage):
        response = signed_client.post(
            "/webhook/meta", content=_body(), headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert storage.get_message_by_provider_message_id("wamid.TEXT001") is None
        events = storage.list_webhook_events()
        assert len(events) == 1
        assert events[0].response["status"] == 401

    def test_wrong_signature_rejected(self, signed_client, storage):
        body = _body()
        response = signed_client.post(
            "/webhook/meta",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign_body(body, "other")},
        )
        assert response.status_code == 401
        assert storage.get_message_by_provider_message_id("wamid.TEXT001") is None

    def test_signature_over_raw_bytes_accepted(self, signed_client, storage):
        # Unusual spacing: re-serializing would change the signed bytes.
        body = json.dumps(webhook_payload(text_message()), indent=3).encode()
        response = signed_client.post(
            "/webhook/meta",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign_body(body, SECRET)},
        )

        assert response.status_code == 200
        assert response.text == "ok"
        assert storage.get_message_by_provider_message_id("wamid.TEXT001") is not None

    def test_no_secret_accepts_unsigned(self, client, storage):
        response = client.post("/webhook/meta", content=_body())
        assert response.status_code == 200
        assert storage.get_message_by_provider_message_id("wamid.TEXT001") is not None
