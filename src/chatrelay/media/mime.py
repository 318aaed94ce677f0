"""MIME type and file extension helpers."""

import mimetypes

# Preferred extensions where mimetypes.guess_extension is ambiguous or missing.
_PREFERRED_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/quicktime": "mov",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/amr": "amr",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "text/csv": "csv",
}

_EXTRA_TYPES = {
    "webp": "image/webp",
    "heic": "image/heic",
    "heif": "image/heif",
    "m4a": "audio/mp4",
    "ogg": "audio/ogg",
    "aac": "audio/aac",
    "amr": "audio/amr",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
}

_IMAGE = frozenset({"jpg", "jpeg", "png", "gif", "webp", "heic", "heif", "svg"})
_VIDEO = frozenset({"mp4", "mov", "m4v", "webm", "avi", "mkv"})
_AUDIO = frozenset({"mp3", "wav", "m4a", "ogg", "aac"})
_DOCUMENT = frozenset(
    {"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "csv", "zip", "rar", "7z"}
)


def normalize_mime_type(value: str | None) -> str | None:
    """Lowercase and drop parameters: 'Audio/OGG; codecs=opus' -> 'audio/ogg'."""
    if not value:
        return None
    base = value.split(";", 1)[0].strip().lower()
    return base or None


def extension_from_mime(value: str | None) -> str | None:
    mime = normalize_mime_type(value)
    if not mime:
        return None
    if mime in _PREFERRED_EXTENSIONS:
        return _PREFERRED_EXTENSIONS[mime]
    guessed = mimetypes.guess_extension(mime)
    return guessed.lstrip(".") if guessed else None


def extension_from_filename(filename: str | None) -> str | None:
    if not filename or "." not in filename:
        return None
    ext = filename.rsplit(".", 1)[1].strip().lower()
    return ext or None


def mime_from_extension(extension: str | None) -> str | None:
    if not extension:
        return None
    ext = extension.lstrip(".").lower()
    if ext in _EXTRA_TYPES:
        return _EXTRA_TYPES[ext]
    guessed, _ = mimetypes.guess_type(f"file.{ext}", strict=False)
    return guessed


def media_type_for_extension(extension: str | None) -> str:
    """Classify a file extension; anything unrecognized is 'unknown'."""
    if not extension:
        return "unknown"
    ext = extension.lstrip(".").lower()
    if ext in _IMAGE:
        return "image"
    if ext in _VIDEO:
        return "video"
    if ext in _AUDIO:
        return "audio"
    if ext in _DOCUMENT:
        return "document"
    return "unknown"
