from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import fakeredis
import pytest

from db.cache import RedisCache


@pytest.fixture
def lua_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()
    client.close()


def test_first_increment_arms_ttl_once(lua_client) -> None:
    cache = RedisCache(client=lua_client)

    assert cache.incr_with_ttl("rate_limit:u1:burst:0", 60) == 1
    assert 0 < lua_client.ttl("rate_limit:u1:burst:0") <= 60

    # A later increment with a longer TTL must not push the rollover back.
    assert cache.incr_with_ttl("rate_limit:u1:burst:0", 3600) == 2
    assert 0 < lua_client.ttl("rate_limit:u1:burst:0") <= 60


def test_counter_without_expiry_is_rearmed(lua_client) -> None:
    lua_client.set("rate_limit:u2:sustained:0", "7")
    cache = RedisCache(client=lua_client)

    assert cache.incr_with_ttl("rate_limit:u2:sustained:0", 30) == 8
    assert 0 < lua_client.ttl("rate_limit:u2:sustained:0") <= 30


def test_concurrent_increments_are_never_lost(lua_client) -> None:
    cache = RedisCache(client=lua_client)
    workers, per_worker = 8, 200
    start = threading.Barrier(workers)
    seen = []
    seen_lock = threading.Lock()

    def _hammer():
        start.wait()
        local = [cache.incr_with_ttl("rate_limit:shared:burst:0", 60) for _ in range(per_worker)]
        with seen_lock:
            seen.extend(local)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        for future in [pool.submit(_hammer) for _ in range(workers)]:
            future.result()

    total = workers * per_worker
    assert int(lua_client.get("rate_limit:shared:burst:0")) == total
    assert sorted(seen) == list(range(1, total + 1))
    assert 0 < lua_client.ttl("rate_limit:shared:burst:0") <= 60
