"""Correlation ID propagation for request and background-job tracing."""

import uuid
from contextvars import ContextVar, Token

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Copied into worker threads explicitly when a media job is enqueued.
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id() -> str:
    """Return the correlation ID bound to the current context ("" if none)."""
    return _correlation_id.get()


def bind_correlation_id(cid: str) -> Token[str]:
    """Bind a correlation ID to the current context and return the reset token."""
    return _correlation_id.set(cid)


def unbind_correlation_id(token: Token[str]) -> None:
    _correlation_id.reset(token)
