from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

PACKAGE_DIR = Path(__file__).parent


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _default_db_path() -> Path:
    override = _env("WHEELHOUSE_DB_PATH")
    if override:
        return Path(override).expanduser()
    return PACKAGE_DIR / "data" / "wheelhouse.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_default_db_path)
    debug: bool = Field(default_factory=lambda: _env_bool("WHEELHOUSE_DEBUG"))

    jwt_secret: str = Field(default_factory=lambda: _env("JWT_SECRET", "default-secret-change-in-production"))
    jwt_algorithm: str = "HS256"
    token_ttl_days: int = Field(default_factory=lambda: int(_env("TOKEN_TTL_DAYS", "7")))
    cookie_name: str = Field(default_factory=lambda: _env("AUTH_COOKIE_NAME", "auth_token"))
    cookie_secure: bool = Field(default_factory=lambda: _env_bool("COOKIE_SECURE"))
    password_reset_ttl_minutes: int = 60
    min_password_length: int = 8

    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL", "https://api.openai.com/v1"))
    realtime_model: str = Field(default_factory=lambda: _env("REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"))
    realtime_voice: str = Field(default_factory=lambda: _env("REALTIME_VOICE", "sage"))
    speech_model: str = Field(default_factory=lambda: _env("SPEECH_MODEL", "tts-1"))
    speech_voice: str = Field(default_factory=lambda: _env("SPEECH_VOICE", "nova"))
    speech_max_chars: int = 4000
    request_timeout_seconds: float = 30.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
