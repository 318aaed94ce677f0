"""Tests for the webhook ingestion flow (GET handshake and POST delivery)."""

import json
from unittest.mock import patch

import pytest

from chatrelay.config import normalize_webhook_path
from chatrelay.services.ingestion import VERIFICATION_INFO, pending_descriptor
from chatrelay.whatsapp.models import IncomingMedia

from helpers import VERIFY_TOKEN, image_message, text_message, webhook_payload


def _post(client, payload, path="/webhook/meta"):
    return client.post(path, content=json.dumps(payload).encode())


class TestVerificationHandshake:
    def test_challenge_echo(self, client, storage):
        response = client.get(
            "/webhook/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "123"},
        )

        assert response.status_code == 200
        assert response.text == "123"
        events = storage.list_webhook_events()
        assert len(events) == 1
        assert events[0].body is None
        assert events[0].response["status"] == 200

    def test_mode_is_case_insensitive(self, client):
        response = client.get(
            "/webhook/meta",
            params={"hub.mode": "SUBSCRIBE", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "abc"},
        )
        assert response.status_code == 200
        assert response.text == "abc"

    def test_wrong_token_forbidden(self, client, storage):
        response = client.get(
            "/webhook/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "123"},
        )

        assert response.status_code == 403
        assert storage.list_webhook_events()[0].response["status"] == 403

    def test_missing_verify_token_is_configuration_error(self, app, client, storage):
        app.state.adapter.verify_token = ""
        response = client.get(
            "/webhook/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "x", "hub.challenge": "123"},
        )

        assert response.status_code == 500
        assert "error" in response.json()
        assert storage.list_webhook_events()[0].response["status"] == 500

    def test_probe_gets_informational_200(self, client):
        response = client.get("/webhook/meta")
        assert response.status_code == 200
        assert response.text == VERIFICATION_INFO

    def test_subscribe_without_challenge_is_a_probe(self, client):
        response = client.get("/webhook/meta", params={"hub.mode": "subscribe"})
        assert response.status_code == 200
        assert response.text == VERIFICATION_INFO

    def test_other_methods_not_allowed(self, client):
        assert client.put("/webhook/meta").status_code == 405
        assert client.delete("/webhook/meta").status_code == 405


class TestEventDelivery:
    def test_text_message_persisted_and_broadcast(self, client, storage, observer):
        response = _post(client, webhook_payload(text_message()))

        assert response.status_code == 200
        assert response.text == "ok"

        message = storage.get_message_by_provider_message_id("wamid.TEXT001")
        assert message is not None
        assert message.direction == "inbound"
        assert message.status == "received"
        assert message.body == "hello"

        conversation = storage.get_conversation_by_id(message.conversation_id)
        assert conversation.phone == "5511888888888"
        assert conversation.display_name == "Test User"
        assert conversation.last_at is not None

        incoming = observer.events("message_incoming")
        assert len(incoming) == 1
        assert incoming[0]["id"] == message.id

    def test_replay_is_idempotent(self, client, storage, observer):
        payload = webhook_payload(text_message())

        for _ in range(3):
            assert _post(client, payload).status_code == 200

        page = storage.list_conversations()
        assert page["total"] == 1
        messages = storage.list_messages(page["items"][0].id)
        assert messages["total"] == 1
        assert len(observer.events("message_incoming")) == 1
        # one audit record per call
        assert len(storage.list_webhook_events()) == 3

    def test_empty_payload_acknowledged(self, client, storage):
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {}}]}]}
        response = _post(client, payload)

        assert response.status_code == 200
        assert response.text == "ok - no events"
        assert storage.list_conversations()["total"] == 0
        assert storage.list_webhook_events()[0].response["summary"] == "no events"

    @pytest.mark.parametrize(
        "payload",
        [
            {"entry": 5},
            {"entry": True},
            {"entry": [{"changes": 7}]},
            {"entry": [{"changes": [{"value": {"messages": [], "contacts": 3}}]}]},
            {"entry": [{"changes": [{"value": {"messages": [text_message()], "contacts": True}}]}]},
        ],
    )
    def test_unexpected_shapes_acknowledged(self, client, storage, payload):
        response = _post(client, payload)

        assert response.status_code == 200
        assert storage.list_webhook_events()[0].response["status"] == 200

    def test_invalid_json_rejected_and_audited(self, client, storage):
        response = client.post("/webhook/meta", content=b"{not json")
        assert response.status_code == 400
        assert storage.list_webhook_events()[0].response["status"] == 400

    def test_batch_processed_in_order_reusing_conversation(self, client, storage, observer):
        payload = webhook_payload(
            text_message("wamid.A", body="first"),
            text_message("wamid.B", body="second"),
        )
        assert _post(client, payload).status_code == 200

        assert storage.list_conversations()["total"] == 1
        assert [m["body"] for m in observer.events("message_incoming")] == ["first", "second"]

    def test_existing_conversation_reused(self, client, storage):
        existing = storage.create_conversation("5511888888888", display_name="Known")
        _post(client, webhook_payload(text_message()))

        message = storage.get_message_by_provider_message_id("wamid.TEXT001")
        assert message.conversation_id == existing.id
        assert storage.get_conversation_by_id(existing.id).display_name == "Known"

    def test_persistence_failure_returns_500_with_audit(self, client, storage):
        with patch.object(storage, "create_message", side_effect=RuntimeError("db down")):
            response = _post(client, webhook_payload(text_message()))

        assert response.status_code == 500
        events = storage.list_webhook_events()
        assert len(events) == 1
        assert events[0].response["status"] == 500
        assert events[0].response["summary"]["error"] == "RuntimeError"

        # provider retry succeeds once storage recovers
        assert _post(client, webhook_payload(text_message())).status_code == 200
        assert storage.get_message_by_provider_message_id("wamid.TEXT001") is not None

    def test_media_message_starts_pending_and_is_acquired(self, app, client, storage, observer):
        response = _post(client, webhook_payload(image_message()))
        assert response.status_code == 200

        incoming = observer.events("message_incoming")
        assert incoming[0]["media"]["status"] == "pending"
        assert incoming[0]["media"]["url"] is None

        assert app.state.media_queue.wait_idle(timeout=10)

        message = storage.get_message_by_provider_message_id("wamid.IMG001")
        assert message.media.status == "ready"
        assert message.media.url.startswith(f"inbound/original/{message.id}/")

        statuses = [m["media"]["status"] for m in observer.events("message_media_updated")]
        assert statuses[0] == "downloading"
        assert statuses[-1] == "ready"
        assert observer.events("message_media_updated")[-1]["media"]["url"].startswith("/media/")

    def test_custom_webhook_path(self, settings, storage, adapter, hub):
        from dataclasses import replace

        from fastapi.testclient import TestClient

        from chatrelay.api.factory import create_app

        custom = replace(settings, webhook_path=normalize_webhook_path("hooks/wa/"))
        app = create_app(custom, storage=storage, adapter=adapter, hub=hub)
        client = TestClient(app)

        assert _post(client, webhook_payload(text_message()), path="/webhook/hooks/wa").status_code == 200
        assert _post(client, webhook_payload(text_message()), path="/webhook/meta").status_code == 404


class TestPendingDescriptor:
    def test_builds_pending_descriptor(self):
        media = IncomingMedia(
            type="document",
            media_id="m1",
            url="https://cdn.example.com/file",
            mime_type="Application/PDF; charset=binary",
            filename="Report Q1.pdf",
            metadata={"id": "m1"},
        )
        descriptor = pending_descriptor(media)

        assert descriptor.status == "pending"
        assert descriptor.origin == "whatsapp"
        assert descriptor.mime_type == "application/pdf"
        assert descriptor.extension == "pdf"
        assert descriptor.url is None
        assert descriptor.metadata["whatsapp"] == {"id": "m1"}
        assert descriptor.metadata["source_url"] == "https://cdn.example.com/file"

    def test_extension_from_filename_when_mime_missing(self):
        descriptor = pending_descriptor(IncomingMedia(type="document", filename="notes.txt"))
        assert descriptor.extension == "txt"
