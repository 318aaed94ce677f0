"""Binary media on a content root.

Layout (all paths relative to the root, forward slashes)::

    inbound/original/<message-id>/<name>.<ext>
    inbound/thumbnail/<message-id>/<name>.jpg
    inbound/preview/<message-id>/<name>.jpg
    inbound/placeholder/<message-id>/<name>.jpg
    outbound/original/<uuid>-<name>.<ext>

File names never come straight from provider or user input: they are reduced
to [A-Za-z0-9._-] and replaced with a generated name when nothing is left.
Writes go to a temp file in the target directory and are renamed into place.
"""

import os
import re
import tempfile
import uuid
from pathlib import Path

from chatrelay.errors import NotFoundError

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_STEM = 96

DERIVATIVE_KINDS = ("thumbnail", "preview", "placeholder")


def sanitize_filename(
    name: str | None,
    *,
    fallback_stem: str | None = None,
    extension: str | None = None,
) -> str:
    """Reduce an untrusted file name to a safe, bounded one.

    Args:
        name: Candidate name (may contain directories, unicode, dots).
        fallback_stem: Stem used when nothing safe remains; random if None.
        extension: Extension to enforce when the cleaned name has none.
    """
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE.sub("_", base).strip("._-")

    if not cleaned:
        cleaned = _UNSAFE.sub("_", fallback_stem or "").strip("._-") or uuid.uuid4().hex

    stem, dot, ext = cleaned.rpartition(".")
    if not dot:
        stem, ext = cleaned, ""

    wanted_ext = _UNSAFE.sub("", (extension or "").lstrip(".")).lower()
    if not ext and wanted_ext:
        ext = wanted_ext

    stem = stem[:_MAX_STEM] or uuid.uuid4().hex
    ext = ext[:16].lower()
    return f"{stem}.{ext}" if ext else stem


def _segment(value: str) -> str:
    cleaned = _UNSAFE.sub("_", value).strip("._-")
    if not cleaned:
        raise ValueError("empty path segment")
    return cleaned


class MediaStore:
    """Filesystem-backed media storage rooted at one directory."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).resolve()

    def ensure_directories(self) -> None:
        for sub in ("original", *DERIVATIVE_KINDS):
            (self.root / "inbound" / sub).mkdir(parents=True, exist_ok=True)
        (self.root / "outbound" / "original").mkdir(parents=True, exist_ok=True)

    # -- path layout -----------------------------------------------------

    def inbound_path(self, kind: str, message_id: str, filename: str) -> str:
        if kind != "original" and kind not in DERIVATIVE_KINDS:
            raise ValueError(f"unknown media kind: {kind}")
        return "/".join(("inbound", kind, _segment(message_id), sanitize_filename(filename)))

    def outbound_path(self, filename: str | None) -> str:
        safe = sanitize_filename(filename, fallback_stem="upload")
        return "/".join(("outbound", "original", f"{uuid.uuid4().hex[:12]}-{safe}"))

    def resolve(self, relative_path: str) -> Path:
        """Absolute path for a relative one; anything escaping the root is 404."""
        candidate = (self.root / relative_path.lstrip("/")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise NotFoundError("Not found")
        return candidate

    # -- I/O -------------------------------------------------------------

    def write(self, relative_path: str, content: bytes) -> str:
        """Atomically write ``content`` to ``relative_path`` and return it."""
        target = self.resolve(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        return relative_path

    def read(self, relative_path: str) -> bytes:
        path = self.resolve(relative_path)
        if not path.is_file():
            raise NotFoundError("Not found")
        return path.read_bytes()

    def exists(self, relative_path: str) -> bool:
        try:
            return self.resolve(relative_path).is_file()
        except NotFoundError:
            return False
