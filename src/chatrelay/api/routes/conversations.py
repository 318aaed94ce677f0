"""Conversation endpoints for the inbox."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, StrictBool

from chatrelay.api.deps import get_codec, get_settings, get_storage
from chatrelay.config import Settings
from chatrelay.domain.messages import canonical_phone
from chatrelay.errors import NotFoundError, ValidationError
from chatrelay.infra.storage import Storage
from chatrelay.media.signed_url import SignedUrlCodec
from chatrelay.services.rendering import render_message

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


class CreateConversationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone: str = ""
    display_name: str | None = Field(default=None, alias="displayName")


class ArchiveRequest(BaseModel):
    archived: StrictBool


def _page_dict(result: dict, items: list) -> dict:
    return {**result, "items": items}


@router.post("")
def create_conversation(
    req: CreateConversationRequest,
    storage: Storage = Depends(get_storage),
) -> dict:
    """Get or create the conversation for a phone number."""
    phone = canonical_phone(req.phone)
    if not phone:
        raise ValidationError("Phone number is required.")

    conversation = storage.get_conversation_by_phone(phone)
    if conversation is None:
        display_name = (req.display_name or "").strip() or None
        conversation = storage.create_conversation(phone, display_name=display_name)
    return {"conversation": conversation.to_dict()}


@router.get("")
def list_conversations(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    archived: bool = Query(False),
    storage: Storage = Depends(get_storage),
) -> dict:
    result = storage.list_conversations(page=page, page_size=page_size, archived=archived)
    return _page_dict(result, [c.to_dict() for c in result["items"]])


@router.patch("/{conversation_id}/archive")
def archive_conversation(
    conversation_id: str,
    req: ArchiveRequest,
    storage: Storage = Depends(get_storage),
) -> dict:
    return storage.set_conversation_archived(conversation_id, req.archived).to_dict()


@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    storage: Storage = Depends(get_storage),
    codec: SignedUrlCodec = Depends(get_codec),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Messages newest first, media URLs signed for the browser."""
    if storage.get_conversation_by_id(conversation_id) is None:
        raise NotFoundError("Conversation not found.")
    result = storage.list_messages(conversation_id, page=page, page_size=page_size)
    ttl = settings.media_url_ttl_seconds
    return _page_dict(result, [render_message(m, codec, ttl) for m in result["items"]])
