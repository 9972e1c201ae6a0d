"""Key-value cache and atomic counters backed by Redis."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable

import redis
from redis.exceptions import RedisError

from engine.errors import StorageTransient

logger = logging.getLogger(__name__)

# INCR and the first-increment EXPIRE run as one server-side step. The TTL is
# only armed when the key is new (or lost its expiry), so later increments in
# the same window never push the rollover back.
_INCR_WITH_TTL_LUA = """
local current = redis.call('INCR', KEYS[1])
if current == 1 or redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""


def cache_key(prefix: str, *parts: Any) -> str:
    """Build a bounded cache key from arbitrary text parts."""
    payload = "\x1f".join(str(p) for p in parts).encode("utf-8")
    return f"{prefix}:{hashlib.sha256(payload).hexdigest()}"


class RedisCache:
    def __init__(
        self,
        url: str | None = None,
        *,
        client: Any = None,
        socket_timeout: float = 0.5,
    ) -> None:
        if client is None:
            if not url:
                raise ValueError("url or client is required")
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._client = client
        self._incr_with_ttl = client.register_script(_INCR_WITH_TTL_LUA)

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except RedisError as exc:
            raise StorageTransient(operation, str(exc)) from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def get_json(self, key: str) -> Any:
        raw = self._call("cache.get", lambda: self._client.get(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache_decode_failed key=%s", key)
            return None

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value, ensure_ascii=True, separators=(",", ":"))
        self._call(
            "cache.set",
            lambda: self._client.set(key, payload, ex=max(1, int(ttl_seconds))),
        )

    def delete(self, key: str) -> None:
        self._call("cache.delete", lambda: self._client.delete(key))

    def get_int(self, key: str) -> int:
        raw = self._call("cache.get", lambda: self._client.get(key))
        try:
            return int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0

    def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment ``key`` and return the new count."""
        result = self._call(
            "counter.incr",
            lambda: self._incr_with_ttl(keys=[key], args=[max(1, int(ttl_seconds))]),
        )
        return int(result)

    def push_recent(self, key: str, value: Any, *, max_entries: int, ttl_seconds: int) -> None:
        """Prepend ``value`` to a capped most-recent-first list and refresh its expiry."""
        payload = json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)

        def _push():
            pipe = self._client.pipeline(transaction=True)
            pipe.lpush(key, payload)
            pipe.ltrim(key, 0, max(0, max_entries - 1))
            pipe.expire(key, max(1, int(ttl_seconds)))
            return pipe.execute()

        self._call("cache.push_recent", _push)

    def recent(self, key: str, limit: int = 100) -> list[Any]:
        rows = self._call("cache.recent", lambda: self._client.lrange(key, 0, max(0, limit - 1)))
        out = []
        for raw in rows or []:
            try:
                out.append(json.loads(raw))
            except (TypeError, ValueError):
                continue
        return out

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError:
            logger.warning("cache_close_failed")


def cached_call(cache, key: str, ttl_seconds: int, compute: Callable[[], Any]) -> Any:
    """Return the cached value for ``key``, else compute, store and return it.

    The cache is best-effort: lookups and writes that hit a ``StorageTransient``
    fall through to ``compute``. ``None`` and empty results are not stored.
    """
    if cache is not None:
        try:
            cached = cache.get_json(key)
        except StorageTransient:
            logger.warning("cache_lookup_failed key=%s", key.split(":", 1)[0])
            cached = None
        if cached is not None:
            logger.debug("cache_hit key=%s", key)
            return cached

    value = compute()

    if cache is not None and value not in (None, {}, []):
        try:
            cache.set_json(key, value, ttl_seconds)
        except StorageTransient:
            logger.warning("cache_store_failed key=%s", key.split(":", 1)[0])
    return value
