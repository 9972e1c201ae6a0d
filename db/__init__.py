"""Database helpers for MusicForge."""

from db.accounts import AccountStore, ApiKeyRecord, UserRecord
from db.cache import RedisCache, cached_call
from db.tracks import TrackStore
from db.usage_log import UsageLog

__all__ = [
    "AccountStore",
    "ApiKeyRecord",
    "RedisCache",
    "TrackStore",
    "UsageLog",
    "UserRecord",
    "cached_call",
]
