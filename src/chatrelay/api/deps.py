"""Request-scoped accessors for the collaborators wired by the app factory."""

from fastapi import Request

from chatrelay.config import Settings
from chatrelay.infra.storage import Storage
from chatrelay.media.signed_url import SignedUrlCodec
from chatrelay.media.store import MediaStore
from chatrelay.realtime.hub import BroadcastHub
from chatrelay.services.ingestion import WebhookIngestor
from chatrelay.services.outbound import MessageSender


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_codec(request: Request) -> SignedUrlCodec:
    return request.app.state.codec


def get_media_store(request: Request) -> MediaStore:
    return request.app.state.media_store


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_sender(request: Request) -> MessageSender:
    return request.app.state.sender
