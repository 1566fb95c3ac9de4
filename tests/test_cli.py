"""Tests for main.py -- argparse maintenance commands.

Covers:
- init-db creates the schema in the configured database
- purge-tokens and revoke-user report row counts
- revoke-user rejects a non-UUID argument
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect

import main
from auth.store import TokenStore, UserStore, dispose_engine, open_engine
from core.config import get_settings


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def test_init_db_creates_tables(db_url, capsys):
    assert main.main(["init-db"]) == 0
    engine = open_engine(db_url, create_schema=False)
    try:
        assert {"users", "refresh_tokens"} <= set(inspect(engine).get_table_names())
    finally:
        dispose_engine(engine)
    assert "Schema ready" in capsys.readouterr().out


def test_purge_and_revoke_report_counts(db_url, capsys):
    engine = open_engine(db_url)
    user = UserStore(engine).create("alice@example.com", "$2b$12$digest")
    tokens = TokenStore(engine)
    now = datetime.now(timezone.utc)
    tokens.save(user.id, "expired", now - timedelta(days=1))
    tokens.save(user.id, "live", now + timedelta(days=1))
    dispose_engine(engine)

    assert main.main(["purge-tokens"]) == 0
    assert "Purged 1 expired" in capsys.readouterr().out

    assert main.main(["revoke-user", str(user.id)]) == 0
    assert f"Revoked 1 refresh token(s) for user {user.id}" in capsys.readouterr().out


def test_revoke_user_rejects_bad_id(db_url, capsys):
    assert main.main(["revoke-user", "not-a-uuid"]) == 2
    assert "not a valid user ID" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()
