"""Media acquisition: metadata fetch, download, store, derive, signal.

One job handles one message's attachment. Status only moves forward
(pending -> downloading -> ready | failed) and every persisted transition is
reported through the status callback. Failures are contained here: they end
in a terminal ``failed`` descriptor and are never raised to the caller.
"""

import hashlib
from collections.abc import Callable
from dataclasses import dataclass, replace

from chatrelay.domain.messages import MediaDescriptor, MediaStorage, Message
from chatrelay.errors import ProviderError, ValidationError
from chatrelay.infra.storage import Storage
from chatrelay.infra.time import utc_now
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context

from .derivatives import build_derivatives
from .mime import extension_from_filename, extension_from_mime, mime_from_extension, normalize_mime_type
from .store import MediaStore, sanitize_filename

logger = get_logger(__name__)

StatusCallback = Callable[[Message], None]

_ERROR_MAX_LEN = 500


@dataclass(frozen=True)
class MediaJob:
    """Work item for one pending attachment."""

    message_id: str
    conversation_id: str
    provider_media_id: str | None = None
    source_url: str | None = None
    correlation_id: str = ""


def job_for_message(message: Message, correlation_id: str = "") -> MediaJob | None:
    """Build a job for a message whose media is pending, else None."""
    media = message.media
    if media is None or media.status != "pending":
        return None
    if not media.provider_media_id and not (media.metadata or {}).get("source_url"):
        return None
    return MediaJob(
        message_id=message.id,
        conversation_id=message.conversation_id,
        provider_media_id=media.provider_media_id,
        source_url=(media.metadata or {}).get("source_url"),
        correlation_id=correlation_id,
    )


class MediaPipeline:
    """Runs media jobs against a provider adapter and a media store.

    Args:
        storage: Message storage (re-read at job start, updated per transition).
        adapter: Provider adapter exposing fetch_media_metadata/download_media.
        store: Filesystem media store.
        max_attempts: Download attempts per job; only transient provider
            errors are retried.
        on_status_change: Called with the updated Message after each
            persisted transition.
    """

    def __init__(
        self,
        storage: Storage,
        adapter,
        store: MediaStore,
        *,
        max_attempts: int = 2,
        on_status_change: StatusCallback | None = None,
    ) -> None:
        self.storage = storage
        self.adapter = adapter
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.on_status_change = on_status_change

    def _notify(self, message: Message) -> None:
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(message)
        except Exception:
            logger.exception(
                "media status callback failed",
                extra={"extra_fields": safe_log_context(message_id=message.id)},
            )

    def _current(self, message: Message) -> MediaDescriptor:
        """Latest stored descriptor, including retry bookkeeping from _download."""
        latest = self.storage.get_message_by_id(message.id)
        if latest is not None and latest.media is not None:
            return latest.media
        return message.media

    def _save(self, message: Message, media: MediaDescriptor) -> Message:
        updated = self.storage.update_message_media(message.id, media)
        if updated is None:
            # Deleted while in flight; keep going on the local copy.
            updated = replace(message, media=media)
        self._notify(updated)
        return updated

    def run(self, job: MediaJob) -> Message | None:
        """Process one job. Returns the final message, or None if it vanished."""
        message = self.storage.get_message_by_id(job.message_id)
        log_ctx = safe_log_context(message_id=job.message_id)

        if message is None or message.media is None:
            logger.warning("media job for unknown message skipped", extra={"extra_fields": log_ctx})
            return None
        if message.media.status != "pending":
            logger.info(
                "media job skipped, media not pending",
                extra={"extra_fields": {**log_ctx, "status": message.media.status}},
            )
            return message

        media = message.media.advance("downloading")
        message = self._save(message, media)
        logger.info("media download started", extra={"extra_fields": {**log_ctx, "type": media.type}})

        try:
            ready = self._acquire(message, job)
        except Exception as exc:
            current = self._current(message)
            failed = current.advance(
                "failed",
                download_attempts=current.download_attempts + 1,
                download_error=_error_text(exc),
            )
            logger.warning(
                "media download failed",
                extra={"extra_fields": {
                    **log_ctx,
                    "error_type": type(exc).__name__,
                    "attempts": failed.download_attempts,
                }},
            )
            return self._save(message, failed)

        logger.info("media ready", extra={"extra_fields": {**log_ctx, "size_bytes": ready.size_bytes}})
        return self._save(message, ready)

    # -- steps -----------------------------------------------------------

    def _download(self, message: Message, job: MediaJob):
        """Resolve and download with bounded retries on transient errors.

        Failed attempts that will be retried are recorded on the descriptor
        (still ``downloading``). The last error is raised to run().
        """
        media = message.media
        attempt = 1
        while True:
            try:
                url = job.source_url
                metadata = None
                if not url:
                    if not job.provider_media_id:
                        raise ValidationError("media has neither a provider id nor a url")
                    metadata = self.adapter.fetch_media_metadata(job.provider_media_id)
                    url = metadata.url
                return metadata, self.adapter.download_media(url)
            except ProviderError as exc:
                if not exc.is_transient or attempt >= self.max_attempts:
                    raise
                media = media.advance(
                    "downloading",
                    download_attempts=media.download_attempts + 1,
                    download_error=_error_text(exc),
                )
                message = self._save(message, media)
                logger.info(
                    "media download retry",
                    extra={"extra_fields": safe_log_context(message_id=message.id, attempt=attempt)},
                )
                attempt += 1

    def _acquire(self, message: Message, job: MediaJob) -> MediaDescriptor:
        metadata, downloaded = self._download(message, job)
        media = self._current(message)

        mime_type = (
            normalize_mime_type(media.mime_type)
            or normalize_mime_type(metadata.mime_type if metadata else None)
            or normalize_mime_type(downloaded.content_type)
        )
        extension = (
            media.extension
            or extension_from_mime(mime_type)
            or extension_from_filename(media.filename)
        )
        if not mime_type:
            mime_type = mime_from_extension(extension)

        content = downloaded.content
        checksum = hashlib.sha256(content).hexdigest()
        if metadata and metadata.sha256 and metadata.sha256 != checksum:
            logger.warning(
                "media checksum differs from provider metadata",
                extra={"extra_fields": safe_log_context(message_id=message.id)},
            )

        fallback = f"{media.type}-{message.id[:8]}"
        filename = sanitize_filename(media.filename, fallback_stem=fallback, extension=extension)
        original_path = self.store.write(
            self.store.inbound_path("original", message.id, filename), content
        )

        storage = MediaStorage(original_path=original_path)
        changes = {
            "mime_type": mime_type,
            "extension": extension,
            "filename": media.filename or filename,
            "size_bytes": len(content),
            "checksum": checksum,
            "url": original_path,
            "downloaded_at": utc_now(),
        }
        if metadata is not None:
            changes["width"] = media.width or metadata.width
            changes["height"] = media.height or metadata.height

        if media.type in ("image", "video"):
            derived, storage = self._derive(message.id, media.type, content, extension, filename, storage)
            changes.update(derived)
        changes["storage"] = storage

        return media.advance("ready", **changes)

    def _derive(
        self,
        message_id: str,
        media_type: str,
        content: bytes,
        extension: str | None,
        filename: str,
        storage: MediaStorage,
    ) -> tuple[dict, MediaStorage]:
        """Best effort; any failure leaves the descriptor without derivatives."""
        stem = filename.rsplit(".", 1)[0]
        changes: dict = {}
        paths: dict = {}
        try:
            derived = build_derivatives(media_type, content, extension)
            for kind, data in (
                ("thumbnail", derived.thumbnail),
                ("preview", derived.preview),
                ("placeholder", derived.placeholder),
            ):
                if data is None:
                    continue
                rel = self.store.write(self.store.inbound_path(kind, message_id, f"{stem}.jpg"), data)
                paths[f"{kind}_path"] = rel
                changes[f"{kind}_url"] = rel
        except Exception as exc:
            logger.warning(
                "media derivative generation failed",
                extra={"extra_fields": safe_log_context(
                    message_id=message_id, error_type=type(exc).__name__
                )},
            )
            return {}, storage

        if derived.width and derived.height:
            changes["width"] = derived.width
            changes["height"] = derived.height
        if "thumbnail_url" in changes:
            changes["thumbnail_generated_at"] = utc_now()
        return changes, replace(storage, **paths)


def _error_text(exc: Exception) -> str:
    text = getattr(exc, "message", "") or str(exc) or type(exc).__name__
    return text[:_ERROR_MAX_LEN]
