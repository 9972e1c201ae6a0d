"""API-key authentication.

Keys look like ``mf_`` followed by 64 lowercase hex characters. Only the
SHA-256 hash is stored, cached, or looked up; the raw key never leaves this
module and is never logged.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from api.errors import AccountInactive, Unauthenticated
from config.settings import API_KEY_HEX_LENGTH, API_KEY_PREFIX, AUTH_CACHE_TTL_SECONDS
from db.accounts import ApiKeyRecord, UserRecord, hash_api_key
from db.cache import cached_call

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(rf"^{re.escape(API_KEY_PREFIX)}[0-9a-f]{{{API_KEY_HEX_LENGTH}}}$")


def auth_cache_key(key_hash: str) -> str:
    return f"apikey:{key_hash}"


def is_well_formed(raw_key: str) -> bool:
    return bool(_KEY_PATTERN.match(raw_key or ""))


class AuthGate:
    def __init__(self, accounts, cache=None) -> None:
        self._accounts = accounts
        self._cache = cache

    def resolve(self, raw_key: str | None) -> tuple[UserRecord, ApiKeyRecord]:
        """Resolve a raw key to its user and key records.

        Raises:
            Unauthenticated: Missing, malformed or unknown key.
            AccountInactive: The user or the key is deactivated.
        """
        raw_key = (raw_key or "").strip()
        if not raw_key:
            raise Unauthenticated(
                "API key is required. Include X-API-Key header.",
                code="MISSING_API_KEY",
            )
        if not is_well_formed(raw_key):
            raise Unauthenticated("Invalid API key format", code="INVALID_API_KEY_FORMAT")

        key_hash = hash_api_key(raw_key)
        found = cached_call(
            self._cache,
            auth_cache_key(key_hash),
            AUTH_CACHE_TTL_SECONDS,
            lambda: self._lookup(key_hash),
        )
        if not found:
            logger.info("auth_rejected reason=unknown_key hash=%s", key_hash[:12])
            raise Unauthenticated("Invalid API key")

        user = UserRecord.from_dict(found["user"])
        key = ApiKeyRecord.from_dict(found["key"])
        if not user.is_active or not key.is_active:
            logger.info("auth_rejected reason=inactive key_id=%s", key.id)
            raise AccountInactive()
        return user, key

    def _lookup(self, key_hash: str) -> dict[str, Any] | None:
        row = self._accounts.find_by_key_hash(key_hash)
        if row is None:
            return None
        user, key = row
        return {"user": user.to_dict(), "key": key.to_dict()}

    def touch(self, key_id: str) -> None:
        self._accounts.touch_last_used(key_id)
