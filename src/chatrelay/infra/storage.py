"""Storage collaborator: the persistence operations the core invokes.

Backends are selected by STORAGE_BACKEND:
- "memory" (default): process-local, thread-safe; for dev and tests
- "postgres": psycopg2 against DATABASE_URL (see postgres_storage.py)

Both enforce the two uniqueness rules the core relies on: one conversation
per phone, one message per provider message id. A provider id collision
raises DuplicateEvent.
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

from chatrelay.domain.messages import Conversation, MediaDescriptor, Message, WebhookEvent
from chatrelay.errors import ConfigurationError, DuplicateEvent, NotFoundError
from chatrelay.infra.time import utc_now


class Storage(Protocol):
    """Operations used by ingestion, media pipeline and send paths."""

    def get_conversation_by_id(self, conversation_id: str) -> Conversation | None: ...

    def get_conversation_by_phone(self, phone: str) -> Conversation | None: ...

    def create_conversation(
        self,
        phone: str,
        display_name: str | None = None,
        created_by_user_id: str | None = None,
    ) -> Conversation: ...

    def list_conversations(
        self, page: int = 1, page_size: int = 20, archived: bool = False
    ) -> dict[str, Any]: ...

    def set_conversation_archived(self, conversation_id: str, archived: bool) -> Conversation: ...

    def update_conversation_last_at(self, conversation_id: str, at: datetime | None = None) -> None: ...

    def create_message(
        self,
        *,
        conversation_id: str,
        direction: str,
        status: str,
        body: str | None = None,
        media: MediaDescriptor | None = None,
        provider_message_id: str | None = None,
        reply_to_message_id: str | None = None,
        sent_by_user_id: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> Message: ...

    def get_message_by_id(self, message_id: str) -> Message | None: ...

    def get_message_by_provider_message_id(self, provider_message_id: str) -> Message | None: ...

    def list_messages(
        self, conversation_id: str, page: int = 1, page_size: int = 50
    ) -> dict[str, Any]: ...

    def update_message_media(self, message_id: str, media: MediaDescriptor) -> Message | None: ...

    def delete_message(self, message_id: str) -> Message | None: ...

    def log_webhook_event(
        self,
        *,
        headers: dict[str, Any],
        query: dict[str, Any],
        body: Any,
        response: dict[str, Any],
        webhook_id: str | None = None,
        instance_id: str | None = None,
    ) -> WebhookEvent: ...

    def list_webhook_events(
        self,
        limit: int = 50,
        webhook_id: str | None = None,
        instance_id: str | None = None,
    ) -> list[WebhookEvent]: ...


def _page(items: list[Any], page: int, page_size: int) -> dict[str, Any]:
    page = max(1, page)
    page_size = max(1, page_size)
    start = (page - 1) * page_size
    return {
        "items": items[start:start + page_size],
        "total": len(items),
        "page": page,
        "page_size": page_size,
    }


class InMemoryStorage:
    """Dict-backed storage guarded by a single lock.

    The lock covers only the dict operations; callers never hold it across
    network I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: dict[str, Conversation] = {}
        self._by_phone: dict[str, str] = {}
        self._messages: dict[str, Message] = {}
        self._by_provider_id: dict[str, str] = {}
        self._events: list[WebhookEvent] = []

    # -- conversations ---------------------------------------------------

    def get_conversation_by_id(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def get_conversation_by_phone(self, phone: str) -> Conversation | None:
        with self._lock:
            cid = self._by_phone.get(phone)
            return self._conversations.get(cid) if cid else None

    def create_conversation(
        self,
        phone: str,
        display_name: str | None = None,
        created_by_user_id: str | None = None,
    ) -> Conversation:
        with self._lock:
            existing = self._by_phone.get(phone)
            if existing:
                return self._conversations[existing]
            now = utc_now()
            conversation = Conversation(
                id=str(uuid.uuid4()),
                phone=phone,
                display_name=display_name,
                last_at=now,
                created_by_user_id=created_by_user_id,
                created_at=now,
            )
            self._conversations[conversation.id] = conversation
            self._by_phone[phone] = conversation.id
            return conversation

    def list_conversations(
        self, page: int = 1, page_size: int = 20, archived: bool = False
    ) -> dict[str, Any]:
        with self._lock:
            items = [c for c in self._conversations.values() if c.archived == archived]
        items.sort(key=lambda c: c.last_at or c.created_at, reverse=True)
        return _page(items, page, page_size)

    def set_conversation_archived(self, conversation_id: str, archived: bool) -> Conversation:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found.")
            updated = replace(conversation, archived=archived)
            self._conversations[conversation_id] = updated
            return updated

    def update_conversation_last_at(self, conversation_id: str, at: datetime | None = None) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                self._conversations[conversation_id] = replace(conversation, last_at=at or utc_now())

    # -- messages --------------------------------------------------------

    def create_message(
        self,
        *,
        conversation_id: str,
        direction: str,
        status: str,
        body: str | None = None,
        media: MediaDescriptor | None = None,
        provider_message_id: str | None = None,
        reply_to_message_id: str | None = None,
        sent_by_user_id: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> Message:
        with self._lock:
            if provider_message_id and provider_message_id in self._by_provider_id:
                raise DuplicateEvent(f"provider message {provider_message_id} already stored")
            message = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                direction=direction,  # type: ignore[arg-type]
                status=status,  # type: ignore[arg-type]
                body=body,
                media=media,
                provider_message_id=provider_message_id,
                reply_to_message_id=reply_to_message_id,
                sent_by_user_id=sent_by_user_id,
                raw=raw,
                created_at=utc_now(),
            )
            self._messages[message.id] = message
            if provider_message_id:
                self._by_provider_id[provider_message_id] = message.id
            return message

    def get_message_by_id(self, message_id: str) -> Message | None:
        with self._lock:
            return self._messages.get(message_id)

    def get_message_by_provider_message_id(self, provider_message_id: str) -> Message | None:
        with self._lock:
            mid = self._by_provider_id.get(provider_message_id)
            return self._messages.get(mid) if mid else None

    def list_messages(
        self, conversation_id: str, page: int = 1, page_size: int = 50
    ) -> dict[str, Any]:
        with self._lock:
            items = [m for m in self._messages.values() if m.conversation_id == conversation_id]
        # dict preserves insertion order, so reversing gives newest first
        items.reverse()
        return _page(items, page, page_size)

    def update_message_media(self, message_id: str, media: MediaDescriptor) -> Message | None:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return None
            updated = replace(message, media=media)
            self._messages[message_id] = updated
            return updated

    def delete_message(self, message_id: str) -> Message | None:
        with self._lock:
            message = self._messages.pop(message_id, None)
            if message is not None and message.provider_message_id:
                self._by_provider_id.pop(message.provider_message_id, None)
            return message

    # -- audit log -------------------------------------------------------

    def log_webhook_event(
        self,
        *,
        headers: dict[str, Any],
        query: dict[str, Any],
        body: Any,
        response: dict[str, Any],
        webhook_id: str | None = None,
        instance_id: str | None = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            headers=dict(headers),
            query=dict(query),
            body=body,
            response=dict(response),
            webhook_id=webhook_id,
            instance_id=instance_id,
            created_at=utc_now(),
        )
        with self._lock:
            self._events.append(event)
        return event

    def list_webhook_events(
        self,
        limit: int = 50,
        webhook_id: str | None = None,
        instance_id: str | None = None,
    ) -> list[WebhookEvent]:
        with self._lock:
            events = list(self._events)
        if webhook_id:
            events = [e for e in events if e.webhook_id == webhook_id]
        if instance_id:
            events = [e for e in events if e.instance_id == instance_id]
        events.reverse()
        return events[:max(0, limit)]


def create_storage(backend: str, database_url: str = "") -> Storage:
    """Build the storage backend named by STORAGE_BACKEND.

    Raises:
        ConfigurationError: Unknown backend, or postgres without DATABASE_URL.
    """
    if backend == "memory":
        return InMemoryStorage()
    if backend == "postgres":
        if not database_url:
            raise ConfigurationError("STORAGE_BACKEND=postgres requires DATABASE_URL")
        from chatrelay.infra.postgres_storage import PostgresStorage

        return PostgresStorage(database_url)
    raise ConfigurationError(f"Unknown STORAGE_BACKEND: {backend}")
