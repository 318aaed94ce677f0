"""PostgreSQL storage backend.

Uses raw SQL with psycopg2 (no ORM); one short transaction per operation via
txn(). Media descriptors are stored as JSONB on the message row. Schema lives
in migrations/versions.
"""

import uuid
from datetime import datetime
from typing import Any

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from chatrelay.domain.messages import Conversation, MediaDescriptor, Message, WebhookEvent
from chatrelay.errors import DuplicateEvent, NotFoundError
from chatrelay.infra.db import txn

_CONVERSATION_COLUMNS = (
    "id::text, phone, display_name, last_at, archived, created_by_user_id, created_at"
)
_MESSAGE_COLUMNS = (
    "id::text, conversation_id::text, direction, status, body, media, provider_message_id,"
    " reply_to_message_id::text, sent_by_user_id, raw, created_at"
)
_EVENT_COLUMNS = "id::text, headers, query, body, response, webhook_id, instance_id, created_at"


def _uuid_or_none(value: str | None) -> str | None:
    """Return a canonical UUID string, or None if value is not one."""
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def _conversation(row: tuple) -> Conversation:
    return Conversation(
        id=row[0],
        phone=row[1],
        display_name=row[2],
        last_at=row[3],
        archived=bool(row[4]),
        created_by_user_id=row[5],
        created_at=row[6],
    )


def _message(row: tuple) -> Message:
    return Message(
        id=row[0],
        conversation_id=row[1],
        direction=row[2],
        status=row[3],
        body=row[4],
        media=MediaDescriptor.from_dict(row[5]),
        provider_message_id=row[6],
        reply_to_message_id=row[7],
        sent_by_user_id=row[8],
        raw=row[9],
        created_at=row[10],
    )


def _event(row: tuple) -> WebhookEvent:
    return WebhookEvent(
        id=row[0],
        headers=row[1] or {},
        query=row[2] or {},
        body=row[3],
        response=row[4] or {},
        webhook_id=row[5],
        instance_id=row[6],
        created_at=row[7],
    )


def _media_json(media: MediaDescriptor | None) -> Json | None:
    return Json(media.to_dict()) if media is not None else None


class PostgresStorage:
    """Storage backed by the conversations, messages and webhook_events tables."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn

    # -- conversations ---------------------------------------------------

    def get_conversation_by_id(self, conversation_id: str) -> Conversation | None:
        cid = _uuid_or_none(conversation_id)
        if cid is None:
            return None
        with txn(self.dsn) as cur:
            cur.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = %s",
                (cid,),
            )
            row = cur.fetchone()
        return _conversation(row) if row else None

    def get_conversation_by_phone(self, phone: str) -> Conversation | None:
        with txn(self.dsn) as cur:
            cur.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE phone = %s",
                (phone,),
            )
            row = cur.fetchone()
        return _conversation(row) if row else None

    def create_conversation(
        self,
        phone: str,
        display_name: str | None = None,
        created_by_user_id: str | None = None,
    ) -> Conversation:
        """Insert a conversation, or return the existing one for this phone."""
        with txn(self.dsn) as cur:
            cur.execute(
                f"""
                INSERT INTO conversations (phone, display_name, created_by_user_id, last_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (phone) DO NOTHING
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (phone, display_name, created_by_user_id),
            )
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE phone = %s",
                    (phone,),
                )
                row = cur.fetchone()
        return _conversation(row)

    def list_conversations(
        self, page: int = 1, page_size: int = 20, archived: bool = False
    ) -> dict[str, Any]:
        page = max(1, page)
        page_size = max(1, page_size)
        with txn(self.dsn) as cur:
            cur.execute(
                "SELECT count(*) FROM conversations WHERE archived = %s",
                (archived,),
            )
            total = cur.fetchone()[0]
            cur.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS}
                FROM conversations
                WHERE archived = %s
                ORDER BY coalesce(last_at, created_at) DESC
                LIMIT %s OFFSET %s
                """,
                (archived, page_size, (page - 1) * page_size),
            )
            rows = cur.fetchall()
        return {
            "items": [_conversation(r) for r in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    def set_conversation_archived(self, conversation_id: str, archived: bool) -> Conversation:
        cid = _uuid_or_none(conversation_id)
        row = None
        if cid is not None:
            with txn(self.dsn) as cur:
                cur.execute(
                    f"""
                    UPDATE conversations SET archived = %s WHERE id = %s
                    RETURNING {_CONVERSATION_COLUMNS}
                    """,
                    (archived, cid),
                )
                row = cur.fetchone()
        if row is None:
            raise NotFoundError("Conversation not found.")
        return _conversation(row)

    def update_conversation_last_at(self, conversation_id: str, at: datetime | None = None) -> None:
        cid = _uuid_or_none(conversation_id)
        if cid is None:
            return
        with txn(self.dsn) as cur:
            cur.execute(
                "UPDATE conversations SET last_at = coalesce(%s, now()) WHERE id = %s",
                (at, cid),
            )

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
        """Insert a message.

        Raises:
            DuplicateEvent: provider_message_id already stored.
        """
        try:
            with txn(self.dsn) as cur:
                cur.execute(
                    f"""
                    INSERT INTO messages (
                        conversation_id, direction, status, body, media,
                        provider_message_id, reply_to_message_id, sent_by_user_id, raw
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_MESSAGE_COLUMNS}
                    """,
                    (
                        conversation_id,
                        direction,
                        status,
                        body,
                        _media_json(media),
                        provider_message_id,
                        _uuid_or_none(reply_to_message_id),
                        sent_by_user_id,
                        Json(raw) if raw is not None else None,
                    ),
                )
                row = cur.fetchone()
        except pg_errors.UniqueViolation as exc:
            raise DuplicateEvent(f"provider message {provider_message_id} already stored") from exc
        return _message(row)

    def get_message_by_id(self, message_id: str) -> Message | None:
        mid = _uuid_or_none(message_id)
        if mid is None:
            return None
        with txn(self.dsn) as cur:
            cur.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = %s", (mid,))
            row = cur.fetchone()
        return _message(row) if row else None

    def get_message_by_provider_message_id(self, provider_message_id: str) -> Message | None:
        with txn(self.dsn) as cur:
            cur.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE provider_message_id = %s",
                (provider_message_id,),
            )
            row = cur.fetchone()
        return _message(row) if row else None

    def list_messages(
        self, conversation_id: str, page: int = 1, page_size: int = 50
    ) -> dict[str, Any]:
        page = max(1, page)
        page_size = max(1, page_size)
        cid = _uuid_or_none(conversation_id)
        if cid is None:
            return {"items": [], "total": 0, "page": page, "page_size": page_size}
        with txn(self.dsn) as cur:
            cur.execute("SELECT count(*) FROM messages WHERE conversation_id = %s", (cid,))
            total = cur.fetchone()[0]
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE conversation_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (cid, page_size, (page - 1) * page_size),
            )
            rows = cur.fetchall()
        return {
            "items": [_message(r) for r in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    def update_message_media(self, message_id: str, media: MediaDescriptor) -> Message | None:
        mid = _uuid_or_none(message_id)
        if mid is None:
            return None
        with txn(self.dsn) as cur:
            cur.execute(
                f"UPDATE messages SET media = %s WHERE id = %s RETURNING {_MESSAGE_COLUMNS}",
                (_media_json(media), mid),
            )
            row = cur.fetchone()
        return _message(row) if row else None

    def delete_message(self, message_id: str) -> Message | None:
        mid = _uuid_or_none(message_id)
        if mid is None:
            return None
        with txn(self.dsn) as cur:
            cur.execute(f"DELETE FROM messages WHERE id = %s RETURNING {_MESSAGE_COLUMNS}", (mid,))
            row = cur.fetchone()
        return _message(row) if row else None

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
        with txn(self.dsn) as cur:
            cur.execute(
                f"""
                INSERT INTO webhook_events (headers, query, body, response, webhook_id, instance_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_EVENT_COLUMNS}
                """,
                (
                    Json(headers),
                    Json(query),
                    Json(body) if body is not None else None,
                    Json(response),
                    webhook_id,
                    instance_id,
                ),
            )
            row = cur.fetchone()
        return _event(row)

    def list_webhook_events(
        self,
        limit: int = 50,
        webhook_id: str | None = None,
        instance_id: str | None = None,
    ) -> list[WebhookEvent]:
        clauses = []
        params: list[Any] = []
        if webhook_id:
            clauses.append("webhook_id = %s")
            params.append(webhook_id)
        if instance_id:
            clauses.append("instance_id = %s")
            params.append(instance_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(0, limit))

        with txn(self.dsn) as cur:
            cur.execute(
                f"SELECT {_EVENT_COLUMNS} FROM webhook_events {where}"
                " ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            )
            rows = cur.fetchall()
        return [_event(r) for r in rows]
