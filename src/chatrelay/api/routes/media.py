"""Private media route and upload endpoint.

GET /media/<path> only serves files whose signed URL verifies; the check
runs before any filesystem access.
"""

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse

from chatrelay.api.deps import get_codec, get_media_store, get_settings
from chatrelay.config import Settings
from chatrelay.errors import NotFoundError, ValidationError
from chatrelay.media.mime import extension_from_filename, mime_from_extension
from chatrelay.media.signed_url import MEDIA_ROUTE, SignedUrlCodec, media_url_path
from chatrelay.media.store import MediaStore
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context
from chatrelay.services.rendering import absolute_url, request_base_url

router = APIRouter(tags=["media"])

logger = get_logger(__name__)


@router.get(MEDIA_ROUTE + "/{relative_path:path}")
def serve_media(
    relative_path: str,
    request: Request,
    codec: SignedUrlCodec = Depends(get_codec),
    store: MediaStore = Depends(get_media_store),
):
    check = codec.verify(relative_path, request.query_params)
    if not check.valid:
        logger.warning(
            "signed media url rejected",
            extra={"extra_fields": {"status": check.status, "reason": check.message}},
        )
        return JSONResponse(status_code=check.status, content={"error": check.message})

    path = store.resolve(relative_path)
    if not path.is_file():
        raise NotFoundError("Not found")

    mime = mime_from_extension(extension_from_filename(path.name)) or "application/octet-stream"
    return FileResponse(
        path,
        media_type=mime,
        headers={
            "Cache-Control": "private, max-age=60",
            "Content-Disposition": "inline",
        },
    )


@router.post("/api/upload")
async def upload_media(
    request: Request,
    file: UploadFile | None = File(None),
    store: MediaStore = Depends(get_media_store),
    codec: SignedUrlCodec = Depends(get_codec),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Store an outbound attachment and return its signed URLs."""
    if file is None:
        raise ValidationError("No file uploaded")

    content = await file.read()
    relative_path = store.outbound_path(file.filename)
    await run_in_threadpool(store.write, relative_path, content)

    signed_path = codec.sign(relative_path, settings.media_url_ttl_seconds)
    base_url = settings.public_base_url or request_base_url(request.headers, str(request.base_url))

    logger.info(
        "media uploaded",
        extra={"extra_fields": safe_log_context(relative_path=relative_path, size_bytes=len(content))},
    )
    return {
        "url": signed_path,
        "public_url": absolute_url(base_url, signed_path),
        "relative_path": relative_path,
        "unsigned_url": media_url_path(relative_path),
        "expires_at": codec.expires_at(signed_path),
    }
