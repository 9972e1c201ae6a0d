from __future__ import annotations

import pytest

from api.auth import AuthGate, auth_cache_key, is_well_formed
from api.errors import AccountInactive, Unauthenticated
from db.accounts import AccountStore, generate_api_key, hash_api_key
from engine.models import Plan


class _CountingStore(AccountStore):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.lookups = 0

    def find_by_key_hash(self, key_hash):
        self.lookups += 1
        return super().find_by_key_hash(key_hash)


def _issue(db_path, email="dev@example.com", plan=Plan.STARTER):
    store = _CountingStore(db_path)
    user = store.create_user(email, plan=plan)
    raw_key, record = store.create_api_key(user.id)
    return store, user, raw_key, record


def test_generated_keys_are_well_formed() -> None:
    key = generate_api_key()
    assert key.startswith("mf_")
    assert len(key) == 3 + 64
    assert is_well_formed(key)


@pytest.mark.parametrize(
    "raw_key",
    [
        "mf_" + "a" * 63,
        "mf_" + "a" * 65,
        "mf_" + "A" * 64,
        "sk_" + "a" * 64,
        "mf_" + "g" * 64,
    ],
)
def test_malformed_keys_are_rejected_before_lookup(db_path, raw_key) -> None:
    store = _CountingStore(db_path)
    gate = AuthGate(store)

    with pytest.raises(Unauthenticated) as exc:
        gate.resolve(raw_key)

    assert exc.value.code == "INVALID_API_KEY_FORMAT"
    assert store.lookups == 0


def test_missing_key(db_path) -> None:
    gate = AuthGate(AccountStore(db_path))
    with pytest.raises(Unauthenticated) as exc:
        gate.resolve(None)
    assert exc.value.code == "MISSING_API_KEY"
    assert exc.value.status_code == 401


def test_unknown_key(db_path) -> None:
    gate = AuthGate(AccountStore(db_path))
    with pytest.raises(Unauthenticated) as exc:
        gate.resolve(generate_api_key())
    assert exc.value.code == "INVALID_API_KEY"


def test_valid_key_resolves_user_and_key(db_path, cache) -> None:
    store, user, raw_key, record = _issue(db_path)
    gate = AuthGate(store, cache)

    resolved_user, resolved_key = gate.resolve(raw_key)

    assert resolved_user.id == user.id
    assert resolved_user.plan is Plan.STARTER
    assert resolved_key.id == record.id


def test_only_the_hash_is_stored(db_path) -> None:
    store, _user, raw_key, record = _issue(db_path)
    assert record.key_hash == hash_api_key(raw_key)
    assert raw_key not in record.key_hash


def test_resolution_is_cached_by_hash(db_path, cache, redis_client) -> None:
    store, _user, raw_key, _record = _issue(db_path)
    gate = AuthGate(store, cache)

    gate.resolve(raw_key)
    gate.resolve(raw_key)

    assert store.lookups == 1
    assert auth_cache_key(hash_api_key(raw_key)) in redis_client.values
    assert not any(raw_key in key for key in redis_client.values)


def test_cache_entry_expires_after_five_minutes(db_path, cache, clock) -> None:
    store, _user, raw_key, _record = _issue(db_path)
    gate = AuthGate(store, cache)

    gate.resolve(raw_key)
    clock.advance(301)
    gate.resolve(raw_key)

    assert store.lookups == 2


def test_cache_outage_falls_back_to_store(db_path, cache, redis_client) -> None:
    store, user, raw_key, _record = _issue(db_path)
    redis_client.fail = True

    resolved_user, _key = AuthGate(store, cache).resolve(raw_key)

    assert resolved_user.id == user.id


def test_inactive_user_and_inactive_key_fail_the_same_way(db_path) -> None:
    store, user, raw_key, record = _issue(db_path, email="a@example.com")
    store.set_key_active(record.id, False)
    with pytest.raises(AccountInactive) as key_exc:
        AuthGate(store).resolve(raw_key)

    store2, _user2, raw_key2, _record2 = _issue(db_path, email="b@example.com")
    store2.set_user_active("b@example.com", False)
    with pytest.raises(AccountInactive) as user_exc:
        AuthGate(store2).resolve(raw_key2)

    assert key_exc.value.code == user_exc.value.code == "INACTIVE_ACCOUNT"
    assert key_exc.value.message == user_exc.value.message


def test_touch_updates_last_used(db_path) -> None:
    store, _user, raw_key, record = _issue(db_path)
    gate = AuthGate(store)
    assert store.find_by_key_hash(record.key_hash)[1].last_used_at is None

    gate.touch(record.id)

    assert store.find_by_key_hash(record.key_hash)[1].last_used_at is not None
