#!/usr/bin/env python3
"""Issue or revoke MusicForge API keys.

Run from the repository root:

    python -m scripts.issue_api_key --email dev@example.com --plan starter
"""

from __future__ import annotations

import argparse
import sys

from db.accounts import AccountStore
from db.sqlite import initialize, resolve_db_path
from engine.models import Plan


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create a user if needed and issue a new API key.")
    parser.add_argument("--db", default=None, help="SQLite path (defaults to MUSICFORGE_DB_PATH).")
    parser.add_argument("--email", help="Account email; the user is created when missing.")
    parser.add_argument(
        "--plan",
        default=Plan.FREE.value,
        choices=[p.value for p in Plan],
        help="Plan for newly created users.",
    )
    parser.add_argument("--name", default=None, help="Display name for a new user.")
    parser.add_argument("--company", default=None, help="Company for a new user.")
    parser.add_argument("--key-name", default="default", help="Label stored with the key.")
    parser.add_argument("--deactivate-key", metavar="KEY_ID", help="Deactivate one API key by id.")
    parser.add_argument("--deactivate-user", metavar="EMAIL", help="Deactivate a user and all access.")
    args = parser.parse_args(argv)

    db_path = resolve_db_path(args.db)
    initialize(db_path)
    store = AccountStore(db_path)

    if args.deactivate_key:
        if not store.set_key_active(args.deactivate_key, False):
            print(f"No API key with id {args.deactivate_key}", file=sys.stderr)
            return 1
        print(f"Deactivated key {args.deactivate_key} (cached auth expires within 5 minutes)")
        return 0

    if args.deactivate_user:
        if not store.set_user_active(args.deactivate_user, False):
            print(f"No user with email {args.deactivate_user}", file=sys.stderr)
            return 1
        print(f"Deactivated user {args.deactivate_user} (cached auth expires within 5 minutes)")
        return 0

    if not args.email:
        parser.error("--email is required when issuing a key")

    try:
        user = store.create_user(args.email, plan=Plan(args.plan), name=args.name, company=args.company)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    raw_key, record = store.create_api_key(user.id, name=args.key_name)
    print(f"user_id={user.id} email={user.email} plan={user.plan.value}")
    print(f"key_id={record.id}")
    print(f"api_key={raw_key}")
    print("Store this key now; it cannot be shown again.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
