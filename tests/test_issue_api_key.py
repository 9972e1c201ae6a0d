from __future__ import annotations

import pytest

from api.auth import is_well_formed
from db.accounts import AccountStore, hash_api_key
from engine.models import Plan
from scripts.issue_api_key import main


def _parse(output):
    values = {}
    for line in output.splitlines():
        for part in line.split():
            if "=" in part:
                name, value = part.split("=", 1)
                values[name] = value
    return values


def test_issue_key_creates_user_and_prints_key_once(tmp_path, capsys) -> None:
    db = str(tmp_path / "keys.sqlite")

    assert main(["--db", db, "--email", "DJ@Example.com", "--plan", "pro", "--key-name", "laptop"]) == 0

    values = _parse(capsys.readouterr().out)
    assert values["email"] == "dj@example.com"
    assert values["plan"] == "pro"
    assert is_well_formed(values["api_key"])

    found = AccountStore(db).find_by_key_hash(hash_api_key(values["api_key"]))
    assert found is not None
    user, key = found
    assert user.plan is Plan.PRO
    assert key.name == "laptop"
    assert key.id == values["key_id"]


def test_second_key_reuses_existing_user(tmp_path, capsys) -> None:
    db = str(tmp_path / "keys.sqlite")
    main(["--db", db, "--email", "dj@example.com"])
    first = _parse(capsys.readouterr().out)
    main(["--db", db, "--email", "dj@example.com", "--plan", "scale"])
    second = _parse(capsys.readouterr().out)

    assert first["user_id"] == second["user_id"]
    assert second["plan"] == "free"
    assert first["api_key"] != second["api_key"]


def test_deactivate_key(tmp_path, capsys) -> None:
    db = str(tmp_path / "keys.sqlite")
    main(["--db", db, "--email", "dj@example.com"])
    issued = _parse(capsys.readouterr().out)

    assert main(["--db", db, "--deactivate-key", issued["key_id"]]) == 0
    _user, key = AccountStore(db).find_by_key_hash(hash_api_key(issued["api_key"]))
    assert key.is_active is False


def test_deactivate_unknown_targets_fail(tmp_path, capsys) -> None:
    db = str(tmp_path / "keys.sqlite")
    assert main(["--db", db, "--deactivate-key", "nope"]) == 1
    assert main(["--db", db, "--deactivate-user", "ghost@example.com"]) == 1
    assert "No user" in capsys.readouterr().err


def test_invalid_email_is_rejected(tmp_path, capsys) -> None:
    assert main(["--db", str(tmp_path / "keys.sqlite"), "--email", "not-an-email"]) == 1
    assert "valid email" in capsys.readouterr().err


def test_email_is_required_to_issue(tmp_path) -> None:
    with pytest.raises(SystemExit):
        main(["--db", str(tmp_path / "keys.sqlite")])
