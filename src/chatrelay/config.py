"""Runtime configuration loaded from environment variables.

Settings are read once by the app factory and injected into every
collaborator; nothing below the factory reads os.environ directly.
"""

import os
import secrets
from dataclasses import dataclass
from typing import Mapping

from chatrelay.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_GRAPH_API_VERSION = "v19.0"
DEFAULT_WEBHOOK_PATH = "/webhook/meta"


@dataclass(frozen=True)
class Settings:
    """Resolved service configuration."""

    meta_access_token: str = ""
    meta_phone_number_id: str = ""
    meta_verify_token: str = ""
    meta_app_secret: str = ""
    meta_graph_api_version: str = DEFAULT_GRAPH_API_VERSION
    webhook_path: str = DEFAULT_WEBHOOK_PATH

    media_root: str = "./data/media"
    media_signing_secret: str = ""
    media_url_ttl_seconds: int = 900
    media_provider_url_ttl_seconds: int = 3600
    public_base_url: str = ""

    media_workers: int = 2
    media_queue_size: int = 100
    media_download_attempts: int = 2
    http_timeout_seconds: float = 30.0

    storage_backend: str = "memory"
    database_url: str = ""


def normalize_webhook_path(path: str | None) -> str:
    """Normalize a configured webhook path.

    Blank input falls back to /webhook/meta. The result always starts with
    /webhook, has no duplicate slashes and no trailing slash.
    """
    if not isinstance(path, str) or not path.strip():
        return DEFAULT_WEBHOOK_PATH

    normalized = path.strip()
    if not normalized.startswith("/"):
        normalized = "/" + normalized

    while "//" in normalized:
        normalized = normalized.replace("//", "/")

    if len(normalized) > 1:
        normalized = normalized.rstrip("/") or "/"

    if not normalized.startswith("/webhook"):
        normalized = "/webhook" + ("" if normalized == "/" else normalized)

    return normalized or DEFAULT_WEBHOOK_PATH


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "invalid integer setting, using default",
            extra={"extra_fields": {"setting": key, "default": default}},
        )
        return default


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the environment (or an explicit mapping for tests)."""
    if env is None:
        env = os.environ

    signing_secret = env.get("MEDIA_SIGNING_SECRET", "")
    if not signing_secret:
        # Signed URLs will not survive a restart with an ephemeral key.
        signing_secret = secrets.token_hex(32)
        logger.warning("MEDIA_SIGNING_SECRET not set, using an ephemeral per-process key")

    timeout_raw = env.get("HTTP_TIMEOUT_SECONDS", "")
    try:
        http_timeout = float(timeout_raw) if timeout_raw.strip() else 30.0
    except ValueError:
        http_timeout = 30.0

    return Settings(
        meta_access_token=env.get("META_ACCESS_TOKEN", ""),
        meta_phone_number_id=env.get("META_PHONE_NUMBER_ID", ""),
        meta_verify_token=env.get("META_VERIFY_TOKEN", ""),
        meta_app_secret=env.get("META_APP_SECRET", ""),
        meta_graph_api_version=env.get("META_GRAPH_API_VERSION", "") or DEFAULT_GRAPH_API_VERSION,
        webhook_path=normalize_webhook_path(env.get("META_WEBHOOK_PATH")),
        media_root=env.get("MEDIA_ROOT", "") or "./data/media",
        media_signing_secret=signing_secret,
        media_url_ttl_seconds=_int(env, "MEDIA_URL_TTL_SECONDS", 900),
        media_provider_url_ttl_seconds=_int(env, "MEDIA_PROVIDER_URL_TTL_SECONDS", 3600),
        public_base_url=env.get("MEDIA_PUBLIC_BASE_URL", "") or env.get("PUBLIC_BASE_URL", ""),
        media_workers=max(1, _int(env, "MEDIA_WORKERS", 2)),
        media_queue_size=max(1, _int(env, "MEDIA_QUEUE_SIZE", 100)),
        media_download_attempts=max(1, _int(env, "MEDIA_DOWNLOAD_ATTEMPTS", 2)),
        http_timeout_seconds=http_timeout,
        storage_backend=(env.get("STORAGE_BACKEND", "") or "memory").lower(),
        database_url=env.get("DATABASE_URL", ""),
    )
