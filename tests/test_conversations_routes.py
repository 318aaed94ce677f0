"""Tests for conversation, message-deletion and audit endpoints."""

import json

from chatrelay.domain.messages import MediaDescriptor, MediaStorage

from helpers import VERIFY_TOKEN, text_message, webhook_payload


class TestConversations:
    def test_create_is_get_or_create(self, client, storage):
        first = client.post("/api/conversations", json={"phone": "5511999999999", "displayName": "Ana"})
        second = client.post("/api/conversations", json={"phone": "5511999999999", "displayName": "Other"})

        assert first.status_code == 200
        assert first.json()["conversation"]["display_name"] == "Ana"
        assert second.json()["conversation"]["id"] == first.json()["conversation"]["id"]
        assert second.json()["conversation"]["display_name"] == "Ana"
        assert storage.list_conversations()["total"] == 1

    def test_formatted_phone_stored_as_digits(self, client):
        response = client.post("/api/conversations", json={"phone": "+55 (11) 88888-8888"})
        assert response.json()["conversation"]["phone"] == "5511888888888"

    def test_create_and_send_share_one_conversation(self, client, storage):
        created = client.post("/api/conversations", json={"phone": "+55 11 88888-8888"}).json()

        sent = client.post("/api/message/send", json={"to": "+55 11 88888-8888", "body": "hello"}).json()

        assert sent["message"]["conversation_id"] == created["conversation"]["id"]
        assert storage.list_conversations()["total"] == 1

    def test_create_and_inbound_share_one_conversation(self, client, storage):
        created = client.post("/api/conversations", json={"phone": "+55 11 88888-8888"}).json()

        client.post("/webhook/meta", content=json.dumps(webhook_payload(text_message())).encode())

        message = storage.get_message_by_provider_message_id("wamid.TEXT001")
        assert message.conversation_id == created["conversation"]["id"]
        assert storage.list_conversations()["total"] == 1

    def test_letters_only_phone_rejected(self, client):
        assert client.post("/api/conversations", json={"phone": "abc"}).status_code == 400

    def test_create_requires_phone(self, client):
        response = client.post("/api/conversations", json={"phone": "  "})
        assert response.status_code == 400
        assert response.json() == {"error": "Phone number is required."}

    def test_list_paginates(self, client, storage):
        for n in range(3):
            storage.create_conversation(f"551100000000{n}")

        response = client.get("/api/conversations", params={"page": 1, "page_size": 2})

        data = response.json()
        assert data["total"] == 3
        assert data["page"] == 1
        assert data["page_size"] == 2
        assert len(data["items"]) == 2

    def test_archive_hides_from_default_list(self, client, storage):
        conversation = storage.create_conversation("5511999999999")

        response = client.patch(f"/api/conversations/{conversation.id}/archive", json={"archived": True})

        assert response.status_code == 200
        assert response.json()["archived"] is True
        assert client.get("/api/conversations").json()["total"] == 0
        assert client.get("/api/conversations", params={"archived": "true"}).json()["total"] == 1

    def test_archive_requires_boolean(self, client, storage):
        conversation = storage.create_conversation("5511999999999")
        response = client.patch(f"/api/conversations/{conversation.id}/archive", json={"archived": "yes"})
        assert response.status_code == 400

    def test_archive_unknown(self, client):
        response = client.patch("/api/conversations/missing/archive", json={"archived": True})
        assert response.status_code == 404


class TestConversationMessages:
    def test_newest_first_with_signed_media(self, client, storage):
        conversation = storage.create_conversation("5511999999999")
        storage.create_message(
            conversation_id=conversation.id, direction="inbound", status="received", body="older"
        )
        media = MediaDescriptor(
            origin="whatsapp",
            type="image",
            status="ready",
            url="inbound/original/m/a.jpg",
            thumbnail_url="inbound/thumbnail/m/a.jpg",
            storage=MediaStorage(original_path="inbound/original/m/a.jpg"),
        )
        storage.create_message(
            conversation_id=conversation.id, direction="inbound", status="received", media=media
        )

        response = client.get(f"/api/conversations/{conversation.id}/messages")

        assert response.status_code == 200
        items = response.json()["items"]
        assert items[1]["body"] == "older"
        assert items[0]["media"]["url"].startswith("/media/inbound/original/m/a.jpg?expires=")
        assert items[0]["media"]["thumbnail_url"].startswith("/media/inbound/thumbnail/m/a.jpg?")
        # storage paths stay relative
        assert items[0]["media"]["storage"]["original_path"] == "inbound/original/m/a.jpg"

    def test_unknown_conversation(self, client):
        assert client.get("/api/conversations/missing/messages").status_code == 404


class TestDeleteMessage:
    def test_delete_broadcasts(self, client, storage, observer):
        conversation = storage.create_conversation("5511999999999")
        message = storage.create_message(
            conversation_id=conversation.id, direction="inbound", status="received", body="x"
        )

        response = client.delete(f"/api/messages/{message.id}")

        assert response.status_code == 200
        assert storage.get_message_by_id(message.id) is None
        assert observer.events("message_deleted") == [
            {"id": message.id, "conversation_id": conversation.id}
        ]

    def test_delete_unknown(self, client, observer):
        assert client.delete("/api/messages/missing").status_code == 404
        assert observer.events("message_deleted") == []


HANDSHAKE = {"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1"}


class TestWebhookAudit:
    def test_events_listed_newest_first(self, client):
        client.get("/webhook/meta", params=HANDSHAKE)
        client.post("/webhook/meta", content=json.dumps(webhook_payload(text_message())).encode())

        response = client.get("/api/webhooks/events", params={"limit": 10})

        assert response.status_code == 200
        events = response.json()
        assert len(events) == 2
        assert events[0]["response"]["status"] == 200
        assert events[0]["body"]["object"] == "whatsapp_business_account"
        assert events[1]["body"] is None

    def test_limit(self, client):
        for _ in range(3):
            client.get("/webhook/meta", params=HANDSHAKE)
        assert len(client.get("/api/webhooks/events", params={"limit": 2}).json()) == 2


class TestRealtimeSocket:
    def test_socket_receives_broadcasts(self, client, hub):
        with client.websocket_connect("/ws") as websocket:
            client.post("/webhook/meta", content=json.dumps(webhook_payload(text_message())).encode())
            envelope = json.loads(websocket.receive_text())

        assert envelope["event"] == "message_incoming"
        assert envelope["data"]["body"] == "hello"
