"""HMAC-signed, expiring URLs for the private media route.

A signed URL looks like::

    /media/inbound/original/<message-id>/photo.jpg?expires=1700000900&signature=<hex>

The signature is HMAC-SHA256 over the decoded relative path and the expiry,
keyed with a server-held secret.
"""

import hashlib
import hmac
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, unquote, urlsplit

from chatrelay.errors import AuthenticationError, InvalidSignature, SignedUrlExpired

MEDIA_ROUTE = "/media"


@dataclass(frozen=True)
class SignedUrlCheck:
    valid: bool
    status: int
    message: str


def media_url_path(relative_path: str) -> str:
    """Unsigned URL path for a relative media path."""
    return f"{MEDIA_ROUTE}/{quote(relative_path.lstrip('/'), safe='/')}"


def extract_relative_media_path(url: str | None) -> str | None:
    """Return the relative media path if ``url`` points at the media route.

    Accepts absolute URLs and bare paths, with or without a query string.
    Returns None for anything outside the route.
    """
    if not url:
        return None
    path = urlsplit(url).path
    prefix = MEDIA_ROUTE + "/"
    if not path.startswith(prefix):
        return None
    relative = unquote(path[len(prefix):]).lstrip("/")
    return relative or None


class SignedUrlCodec:
    """Stateless signer/verifier for media paths."""

    def __init__(self, secret: str, *, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode("utf-8")
        self._clock = clock

    def _digest(self, relative_path: str, expires: int) -> str:
        message = f"{relative_path.lstrip('/')}\n{expires}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def sign(self, relative_path: str, ttl_seconds: int) -> str:
        """Return ``/media/<path>?expires=..&signature=..`` valid for ttl_seconds."""
        expires = int(self._clock()) + int(ttl_seconds)
        signature = self._digest(relative_path, expires)
        return f"{media_url_path(relative_path)}?expires={expires}&signature={signature}"

    def check(self, relative_path: str, expires: Any, signature: Any) -> None:
        """Verify a presented path, expiry and signature.

        The signature is checked before the expiry, so a forged expiry is
        always reported as an invalid signature.

        Raises:
            AuthenticationError: Signature parameters are missing.
            InvalidSignature: Malformed expiry or HMAC mismatch.
            SignedUrlExpired: Valid signature, but the expiry has passed.
        """
        if not expires or not signature:
            raise AuthenticationError("Missing signature")

        try:
            expires_at = int(str(expires))
        except ValueError:
            raise InvalidSignature("Invalid signature")

        expected = self._digest(relative_path, expires_at)
        try:
            matches = hmac.compare_digest(expected.encode("ascii"), str(signature).encode("ascii"))
        except UnicodeEncodeError:
            matches = False
        if not matches:
            raise InvalidSignature("Invalid signature")

        if self._clock() > expires_at:
            raise SignedUrlExpired("Signed URL expired")

    def verify(self, relative_path: str, query: Mapping[str, Any]) -> SignedUrlCheck:
        """Non-raising form of check() for request handlers."""
        try:
            self.check(relative_path, query.get("expires"), query.get("signature"))
        except AuthenticationError as exc:
            return SignedUrlCheck(valid=False, status=exc.status_code, message=exc.message)
        return SignedUrlCheck(valid=True, status=200, message="ok")

    def expires_at(self, signed_path: str) -> int | None:
        """Read the expiry back out of a signed path."""
        for part in urlsplit(signed_path).query.split("&"):
            key, _, value = part.partition("=")
            if key == "expires" and value.isdigit():
                return int(value)
        return None
