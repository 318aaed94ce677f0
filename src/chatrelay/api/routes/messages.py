"""Message endpoints: send and delete."""

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.api.deps import get_codec, get_hub, get_sender, get_settings, get_storage
from chatrelay.config import Settings
from chatrelay.errors import NotFoundError
from chatrelay.infra.storage import Storage
from chatrelay.media.signed_url import SignedUrlCodec
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context
from chatrelay.realtime.hub import EVENT_MESSAGE_DELETED, BroadcastHub
from chatrelay.services.outbound import MessageSender, SendCommand
from chatrelay.services.rendering import render_message, request_base_url

router = APIRouter(prefix="/api", tags=["messages"])

logger = get_logger(__name__)


class SendMessageRequest(BaseModel):
    """Send request body. camelCase keys are accepted for the id fields."""

    model_config = ConfigDict(populate_by_name=True)

    to: str | None = None
    conversation_id: str | None = Field(default=None, alias="conversationId")
    body: str | None = None
    media_url: str | None = None
    reply_to_message_id: str | None = Field(default=None, alias="replyToMessageId")


@router.post("/message/send")
def send_message(
    req: SendMessageRequest,
    request: Request,
    sender: MessageSender = Depends(get_sender),
    settings: Settings = Depends(get_settings),
    codec: SignedUrlCodec = Depends(get_codec),
) -> dict:
    """Send a text or media message.

    Returns the persisted message; ``status`` is "failed" when the provider
    rejected or could not be reached.
    """
    command = SendCommand(
        to=req.to,
        conversation_id=req.conversation_id,
        body=req.body,
        media_url=req.media_url,
        reply_to_message_id=req.reply_to_message_id,
    )
    base_url = request_base_url(request.headers, str(request.base_url))
    message = sender.send(command, base_url=base_url)
    return {"ok": True, "message": render_message(message, codec, settings.media_url_ttl_seconds)}


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    storage: Storage = Depends(get_storage),
    hub: BroadcastHub = Depends(get_hub),
) -> dict:
    deleted = await run_in_threadpool(storage.delete_message, message_id)
    if deleted is None:
        raise NotFoundError("Message not found")

    logger.info(
        "message deleted",
        extra={"extra_fields": safe_log_context(message_id=message_id)},
    )
    await run_in_threadpool(
        hub.publish,
        EVENT_MESSAGE_DELETED,
        {"id": deleted.id, "conversation_id": deleted.conversation_id},
    )
    return {"ok": True}
