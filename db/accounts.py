"""Persistence helpers for users and hashed API keys."""

from __future__ import annotations

import hashlib
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from config.settings import API_KEY_HEX_LENGTH, API_KEY_PREFIX
from db.sqlite import connect
from engine.errors import StorageTransient
from engine.models import Plan


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(API_KEY_HEX_LENGTH // 2)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    plan: Plan
    is_active: bool
    name: str | None = None
    company: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "plan": self.plan.value,
            "is_active": self.is_active,
            "name": self.name,
            "company": self.company,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserRecord":
        return cls(
            id=str(data["id"]),
            email=str(data.get("email") or ""),
            plan=Plan.parse(data.get("plan")),
            is_active=bool(data.get("is_active")),
            name=data.get("name"),
            company=data.get("company"),
        )


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    user_id: str
    key_hash: str
    name: str
    is_active: bool
    last_used_at: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "key_hash": self.key_hash,
            "name": self.name,
            "is_active": self.is_active,
            "last_used_at": self.last_used_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApiKeyRecord":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            key_hash=str(data["key_hash"]),
            name=str(data.get("name") or ""),
            is_active=bool(data.get("is_active")),
            last_used_at=data.get("last_used_at"),
            created_at=data.get("created_at"),
        )


def _user_from_row(row: sqlite3.Row, prefix: str = "") -> UserRecord:
    return UserRecord(
        id=row[f"{prefix}id"],
        email=row[f"{prefix}email"],
        plan=Plan.parse(row[f"{prefix}plan"]),
        is_active=bool(row[f"{prefix}is_active"]),
        name=row[f"{prefix}name"],
        company=row[f"{prefix}company"],
    )


class AccountStore:
    """Class-based access to ``users`` and ``api_keys``."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    def find_by_key_hash(self, key_hash: str) -> tuple[UserRecord, ApiKeyRecord] | None:
        """Return the user and key for ``key_hash`` regardless of active flags."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT
                    ak.id AS key_id,
                    ak.user_id AS key_user_id,
                    ak.key_hash AS key_hash,
                    ak.name AS key_name,
                    ak.is_active AS key_is_active,
                    ak.last_used_at AS key_last_used_at,
                    ak.created_at AS key_created_at,
                    u.id AS user_id,
                    u.email AS user_email,
                    u.plan AS user_plan,
                    u.is_active AS user_is_active,
                    u.name AS user_name,
                    u.company AS user_company
                FROM api_keys ak
                JOIN users u ON ak.user_id = u.id
                WHERE ak.key_hash=?
                LIMIT 1
                """,
                (key_hash,),
            )
            row = cur.fetchone()
        except sqlite3.Error as exc:
            raise StorageTransient("accounts.find_by_key_hash", str(exc)) from exc
        finally:
            conn.close()
        if row is None:
            return None
        key = ApiKeyRecord(
            id=row["key_id"],
            user_id=row["key_user_id"],
            key_hash=row["key_hash"],
            name=row["key_name"],
            is_active=bool(row["key_is_active"]),
            last_used_at=row["key_last_used_at"],
            created_at=row["key_created_at"],
        )
        return _user_from_row(row, prefix="user_"), key

    def touch_last_used(self, key_id: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE api_keys SET last_used_at=CURRENT_TIMESTAMP WHERE id=?",
                (key_id,),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageTransient("accounts.touch_last_used", str(exc)) from exc
        finally:
            conn.close()

    def get_user_by_email(self, email: str) -> UserRecord | None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM users WHERE email=? LIMIT 1", ((email or "").strip().lower(),))
            row = cur.fetchone()
            return _user_from_row(row) if row else None
        finally:
            conn.close()

    def create_user(
        self,
        email: str,
        *,
        plan: Plan = Plan.FREE,
        name: str | None = None,
        company: str | None = None,
    ) -> UserRecord:
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValueError("a valid email is required")
        existing = self.get_user_by_email(normalized)
        if existing is not None:
            return existing
        user_id = str(uuid.uuid4())
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO users (id, email, name, company, plan)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, normalized, name, company, plan.value),
            )
            conn.commit()
        finally:
            conn.close()
        return UserRecord(
            id=user_id,
            email=normalized,
            plan=plan,
            is_active=True,
            name=name,
            company=company,
        )

    def create_api_key(self, user_id: str, *, name: str = "default") -> tuple[str, ApiKeyRecord]:
        """Issue a new key for ``user_id``. The raw key is returned once and never stored."""
        if not (user_id or "").strip():
            raise ValueError("user_id is required")
        raw_key = generate_api_key()
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            key_hash=hash_api_key(raw_key),
            name=(name or "default").strip() or "default",
            is_active=True,
        )
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO api_keys (id, user_id, key_hash, name)
                VALUES (?, ?, ?, ?)
                """,
                (record.id, record.user_id, record.key_hash, record.name),
            )
            conn.commit()
        finally:
            conn.close()
        return raw_key, record

    def set_key_active(self, key_id: str, active: bool) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute("UPDATE api_keys SET is_active=? WHERE id=?", (int(active), key_id))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def set_user_active(self, email: str, active: bool) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE users SET is_active=?, updated_at=CURRENT_TIMESTAMP WHERE email=?",
                (int(active), (email or "").strip().lower()),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            return connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageTransient("accounts.connect", str(exc)) from exc
