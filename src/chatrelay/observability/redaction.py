"""Helpers that keep phone numbers, e-mails and message text out of logs."""

import hashlib
import re
from typing import Any

_PHONE_RE = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_RE = re.compile(r"[\w.%+-]+@[\w.-]+\.[A-Za-z]{2,}")

_MASK = "[REDACTED]"


def hash_identifier(value: str | None) -> str:
    """Stable, non-reversible 12-char tag for correlating a phone across logs."""
    if not value:
        return ""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def redact_string(value: str) -> str:
    """Mask phone numbers and e-mail addresses inside free text."""
    return _EMAIL_RE.sub(_MASK, _PHONE_RE.sub(_MASK, value))


def redact_value(value: Any) -> Any:
    """Reduce a value to something safe to log.

    Scalars are kept (strings are masked), containers are summarized by
    shape only.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return {"keys": sorted(str(k) for k in value)}
    if isinstance(value, (list, tuple, set)):
        return {"len": len(value)}
    return type(value).__name__


def safe_log_context(**fields: Any) -> dict[str, Any]:
    """Build an ``extra_fields`` dict with every value redacted."""
    return {key: redact_value(val) for key, val in fields.items()}
