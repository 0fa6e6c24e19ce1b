from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


DEFAULT_ALLOWED_UPLOAD_TYPES = "image/png,image/jpeg,image/jpg,image/webp,application/pdf"


def _get_config_value(*keys: str, default: str = "") -> str:
    for key in keys:
        value = os.getenv(key, "").strip()
        if value:
            return value
    return default


def _get_int(*keys: str, default: int) -> int:
    raw = _get_config_value(*keys)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _get_float(*keys: str, default: float) -> float:
    raw = _get_config_value(*keys)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    app_env: str
    portal_api_base_url: str
    storage_base_url: str
    request_timeout_seconds: float
    max_upload_bytes: int
    allowed_upload_types: tuple[str, ...]
    min_resolution_chars: int
    max_action_words: int
    provisional_ttl_seconds: int
    reconcile_skew_seconds: int
    session_idle_seconds: int
    log_level: str
    log_dir: str

    def portal_api_configured(self) -> bool:
        return self.portal_api_base_url.startswith(("http://", "https://"))


def load_settings() -> Settings:
    allowed = _get_config_value("ALLOWED_UPLOAD_TYPES", default=DEFAULT_ALLOWED_UPLOAD_TYPES)
    return Settings(
        app_env=_get_config_value("APP_ENV", default="dev"),
        portal_api_base_url=_get_config_value(
            "PORTAL_API_BASE_URL",
            "API_BASE_URL",
            default="http://localhost:8000",
        ).rstrip("/"),
        # Paths stored by the backend are relative to this prefix.
        storage_base_url=_get_config_value("STORAGE_BASE_URL", "FILE_BASE", default="/storage/"),
        request_timeout_seconds=_get_float("REQUEST_TIMEOUT_SECONDS", default=20.0),
        max_upload_bytes=_get_int("MAX_UPLOAD_BYTES", default=10 * 1024 * 1024),
        allowed_upload_types=tuple(t.strip().lower() for t in allowed.split(",") if t.strip()),
        min_resolution_chars=_get_int("MIN_RESOLUTION_CHARS", default=3),
        max_action_words=_get_int("MAX_ACTION_WORDS", default=5000),
        provisional_ttl_seconds=_get_int("PROVISIONAL_TTL_SECONDS", default=300),
        reconcile_skew_seconds=_get_int("RECONCILE_SKEW_SECONDS", default=120),
        session_idle_seconds=_get_int("SESSION_IDLE_SECONDS", default=1800),
        log_level=_get_config_value("LOG_LEVEL", default="INFO").upper(),
        log_dir=_get_config_value("LOG_DIR", default=os.path.join(os.getcwd(), "logs")),
    )


settings = load_settings()
