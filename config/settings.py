"""Application settings and compiled-in plan tables."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass

from engine.paths import DB_PATH

# Fixed-origin windows, in seconds.
SUSTAINED_WINDOW_SECONDS = 3600
BURST_WINDOW_SECONDS = 60

# plan -> (sustained limit, burst limit)
PLAN_LIMITS = {
    "free": (100, 20),
    "starter": (1_000, 100),
    "pro": (10_000, 500),
    "scale": (50_000, 2_000),
    "enterprise": (200_000, 6_000),
}

AUTH_CACHE_TTL_SECONDS = 300
UNDERSTANDING_CACHE_TTL_SECONDS = 3600
TRACK_METADATA_CACHE_TTL_SECONDS = 24 * 60 * 60
SEARCH_CACHE_TTL_SECONDS = 3600
DOWNLOAD_URL_CACHE_TTL_SECONDS = 1800
ANALYSIS_CACHE_TTL_SECONDS = 24 * 60 * 60
RECENT_ACTIVITY_TTL_SECONDS = 3600
RECENT_ACTIVITY_MAX_ENTRIES = 100

# Search fan-out is capped to the first N understood terms.
MAX_SEARCH_TERMS = 3

API_KEY_PREFIX = "mf_"
API_KEY_HEX_LENGTH = 64


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    env: str
    version: str
    db_path: str
    redis_url: str
    openai_api_key: str | None
    openai_model: str
    youtube_api_key: str | None
    audd_api_key: str | None
    collaborator_timeout_seconds: float
    analysis_timeout_seconds: float
    log_level: str
    cors_origins: tuple[str, ...]

    @property
    def is_production(self) -> bool:
        return self.env == "production"


def load_settings() -> Settings:
    origins_raw = os.environ.get("MUSICFORGE_CORS_ORIGINS", "*").strip()
    if origins_raw == "*":
        origins: tuple[str, ...] = ("*",)
    else:
        origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip())
    return Settings(
        env=os.environ.get("MUSICFORGE_ENV", "development").strip().lower(),
        version=os.environ.get("MUSICFORGE_VERSION", "1.0.0"),
        db_path=os.environ.get("MUSICFORGE_DB_PATH", str(DB_PATH)),
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
        openai_api_key=(os.environ.get("OPENAI_API_KEY") or "").strip() or None,
        openai_model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
        youtube_api_key=(os.environ.get("YOUTUBE_API_KEY") or "").strip() or None,
        audd_api_key=(os.environ.get("AUDD_API_KEY") or "").strip() or None,
        collaborator_timeout_seconds=_env_float("MUSICFORGE_COLLABORATOR_TIMEOUT_SECONDS", 20.0),
        analysis_timeout_seconds=_env_float("MUSICFORGE_ANALYSIS_TIMEOUT_SECONDS", 30.0),
        log_level=os.environ.get("MUSICFORGE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        cors_origins=origins,
    )


_SETTINGS: Settings | None = None
_SETTINGS_LOCK = threading.Lock()


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is not None:
        return _SETTINGS
    with _SETTINGS_LOCK:
        if _SETTINGS is None:
            _SETTINGS = load_settings()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = None
