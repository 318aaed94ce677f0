"""Error taxonomy shared by the webhook, media and send paths.

Every error carries the HTTP status it maps to. The app factory installs a
single handler that renders ChatRelayError subclasses as {"error": message}.
"""


class ChatRelayError(Exception):
    """Base class for all service errors."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ChatRelayError):
    """Missing credentials or secrets (tokens, app secret, DATABASE_URL)."""

    status_code = 500


class AuthenticationError(ChatRelayError):
    """Bad webhook signature, bad verify token or bad signed URL."""

    status_code = 401


class ForbiddenError(AuthenticationError):
    status_code = 403


class SignedUrlExpired(AuthenticationError):
    """Signed URL presented after its expiry timestamp."""

    status_code = 410


class InvalidSignature(AuthenticationError):
    """Signed URL whose HMAC does not match the path and expiry."""

    status_code = 403


class ValidationError(ChatRelayError):
    """Malformed client or send request input."""

    status_code = 400


class NotFoundError(ChatRelayError):
    status_code = 404


class ProviderError(ChatRelayError):
    """Upstream provider answered with a non-success HTTP status."""

    status_code = 502

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def is_transient(self) -> bool:
        """True for rate limiting, 5xx and network-level failures (no status)."""
        if self.status is None:
            return True
        return self.status == 429 or self.status >= 500


class DuplicateEvent(ChatRelayError):
    """Provider message id already persisted. Absorbed as a no-op skip."""

    status_code = 200


class InvalidMediaTransition(ChatRelayError):
    """Attempt to move a media descriptor backwards in its status machine."""

    status_code = 500
