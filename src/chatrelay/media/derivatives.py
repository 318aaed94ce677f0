"""Thumbnail, preview and placeholder generation.

Images are handled with Pillow. Videos get a poster frame through ffmpeg
when the binary is on PATH; without it no video derivatives are produced.
All functions here may raise; callers treat derivatives as best effort.
"""

import io
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass

from PIL import Image, ImageFilter, ImageOps

THUMBNAIL_SIZE = (320, 320)
PREVIEW_SIZE = (1280, 1280)
PLACEHOLDER_SIZE = (24, 24)

FFMPEG_TIMEOUT_SECONDS = 20


@dataclass(frozen=True)
class Derivatives:
    thumbnail: bytes | None = None
    preview: bytes | None = None
    placeholder: bytes | None = None
    width: int | None = None
    height: int | None = None


def _encode_jpeg(image: Image.Image, size: tuple[int, int], quality: int) -> bytes:
    copy = image.copy()
    copy.thumbnail(size)
    buffer = io.BytesIO()
    copy.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


def image_derivatives(content: bytes, *, with_preview: bool = True) -> Derivatives:
    """Render JPEG derivatives of an image and report its dimensions."""
    with Image.open(io.BytesIO(content)) as opened:
        image = ImageOps.exif_transpose(opened) or opened
        width, height = image.size
        rgb = image.convert("RGB")

    thumbnail = _encode_jpeg(rgb, THUMBNAIL_SIZE, quality=80)
    preview = _encode_jpeg(rgb, PREVIEW_SIZE, quality=85) if with_preview else None
    placeholder = _encode_jpeg(rgb.filter(ImageFilter.GaussianBlur(2)), PLACEHOLDER_SIZE, quality=40)

    return Derivatives(
        thumbnail=thumbnail,
        preview=preview,
        placeholder=placeholder,
        width=width,
        height=height,
    )


def video_poster_frame(content: bytes, extension: str | None = None) -> bytes | None:
    """Extract one frame of a video as JPEG bytes, or None without ffmpeg."""
    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg is None:
        return None

    suffix = f".{extension}" if extension else ".mp4"
    with tempfile.TemporaryDirectory(prefix="chatrelay-video-") as workdir:
        source = os.path.join(workdir, f"source{suffix}")
        target = os.path.join(workdir, "poster.jpg")
        with open(source, "wb") as handle:
            handle.write(content)

        # Seek 1s in for a representative frame; short clips fall back to the first one.
        for offset in ("1", "0"):
            subprocess.run(
                [ffmpeg, "-y", "-loglevel", "error", "-ss", offset, "-i", source,
                 "-frames:v", "1", "-f", "image2", target],
                check=False,
                capture_output=True,
                timeout=FFMPEG_TIMEOUT_SECONDS,
            )
            if os.path.exists(target) and os.path.getsize(target) > 0:
                with open(target, "rb") as handle:
                    return handle.read()

    return None


def build_derivatives(media_type: str, content: bytes, extension: str | None = None) -> Derivatives:
    """Derivatives for a downloaded attachment.

    Images get thumbnail, preview and placeholder; videos get thumbnail and
    placeholder from a poster frame; other types get nothing.
    """
    if media_type == "image":
        return image_derivatives(content)
    if media_type == "video":
        poster = video_poster_frame(content, extension)
        if poster is None:
            return Derivatives()
        frame = image_derivatives(poster, with_preview=False)
        return Derivatives(
            thumbnail=frame.thumbnail,
            placeholder=frame.placeholder,
            width=frame.width,
            height=frame.height,
        )
    return Derivatives()
