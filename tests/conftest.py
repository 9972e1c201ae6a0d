import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for _path in (str(ROOT), str(TESTS_DIR)):
    if _path not in sys.path:
        sys.path.insert(0, _path)

from db.cache import RedisCache  # noqa: E402
from db.sqlite import initialize  # noqa: E402
from fakes import FakeClock, FakeRedisClient  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client(clock):
    return FakeRedisClient(clock)


@pytest.fixture
def cache(redis_client):
    return RedisCache(client=redis_client)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "musicforge.sqlite"
    monkeypatch.setenv("MUSICFORGE_DB_PATH", str(path))
    initialize(str(path))
    return str(path)
