"""Unit tests for auth/store.py -- TokenStore.

Covers:
- save() + validate_and_fetch_user() resolves the owning user
- expired, unknown and deleted hashes all raise TokenNotFound
- duplicate token_hash raises TokenConflict
- delete_by_hash() / delete_all_for_user() are idempotent
- purge_expired() removes exactly the past-expiry rows, idempotently
- deleting a user cascades to their refresh tokens
"""

import time
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import delete

from auth.errors import StorageFailure, TokenConflict, TokenNotFound
from auth.store import users

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def alice(user_store):
    return user_store.create("alice@example.com", "$2b$12$digest")


@pytest.fixture
def bob(user_store):
    return user_store.create("bob@example.com", "$2b$12$digest")


# ---------------------------------------------------------------------------
# save / validate
# ---------------------------------------------------------------------------


def test_saved_token_resolves_to_owner(token_store, alice, clock):
    record = token_store.save(alice.id, "hash-a", clock.now + timedelta(days=7))
    assert record.user_id == alice.id
    assert record.created_at == clock.now
    assert isinstance(record.id, uuid.UUID)
    owner = token_store.validate_and_fetch_user("hash-a")
    assert owner.id == alice.id
    assert owner.email == "alice@example.com"


def test_unknown_hash_is_not_found(token_store):
    with pytest.raises(TokenNotFound):
        token_store.validate_and_fetch_user("never-issued")


def test_token_expired_at_its_expiry_instant(token_store, alice, clock):
    token_store.save(alice.id, "hash-a", clock.now + timedelta(hours=1))
    clock.advance(hours=1)
    with pytest.raises(TokenNotFound):
        token_store.validate_and_fetch_user("hash-a")


def test_token_valid_just_before_expiry(token_store, alice, clock):
    token_store.save(alice.id, "hash-a", clock.now + timedelta(hours=1))
    clock.advance(minutes=59, seconds=59)
    assert token_store.validate_and_fetch_user("hash-a").id == alice.id


def test_duplicate_hash_raises_conflict(token_store, alice, bob, clock):
    token_store.save(alice.id, "hash-a", clock.now + timedelta(days=7))
    with pytest.raises(TokenConflict):
        token_store.save(bob.id, "hash-a", clock.now + timedelta(days=7))


def test_save_for_unknown_user_is_storage_failure(token_store, clock):
    with pytest.raises(StorageFailure):
        token_store.save(uuid.uuid4(), "hash-a", clock.now + timedelta(days=7))


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


def test_delete_by_hash_is_idempotent(token_store, alice, clock):
    token_store.save(alice.id, "hash-a", clock.now + timedelta(days=7))
    assert token_store.delete_by_hash("hash-a") == 1
    assert token_store.delete_by_hash("hash-a") == 0
    with pytest.raises(TokenNotFound):
        token_store.validate_and_fetch_user("hash-a")


def test_delete_all_for_user_leaves_other_users_alone(token_store, alice, bob, clock):
    expires = clock.now + timedelta(days=7)
    token_store.save(alice.id, "hash-a1", expires)
    token_store.save(alice.id, "hash-a2", expires)
    token_store.save(bob.id, "hash-b1", expires)

    assert token_store.delete_all_for_user(alice.id) == 2
    assert token_store.delete_all_for_user(alice.id) == 0
    assert token_store.count_for_user(alice.id) == 0
    assert token_store.validate_and_fetch_user("hash-b1").id == bob.id


# ---------------------------------------------------------------------------
# purge
# ---------------------------------------------------------------------------


def test_purge_removes_exactly_expired_rows(token_store, alice, clock):
    token_store.save(alice.id, "past", clock.now - timedelta(seconds=1))
    token_store.save(alice.id, "boundary", clock.now)
    token_store.save(alice.id, "future", clock.now + timedelta(seconds=1))

    assert token_store.purge_expired() == 2
    assert token_store.count_for_user(alice.id) == 1
    assert token_store.validate_and_fetch_user("future").id == alice.id


def test_purge_is_idempotent(token_store, alice, clock):
    token_store.save(alice.id, "past", clock.now - timedelta(days=1))
    assert token_store.purge_expired() == 1
    assert token_store.purge_expired() == 0


def test_purge_on_empty_table(token_store):
    assert token_store.purge_expired() == 0


# ---------------------------------------------------------------------------
# cascade and deadlines
# ---------------------------------------------------------------------------


def test_deleting_user_cascades_to_tokens(engine, token_store, alice, clock):
    token_store.save(alice.id, "hash-a", clock.now + timedelta(days=7))
    with engine.begin() as conn:
        conn.execute(delete(users).where(users.c.id == alice.id))
    assert token_store.count_for_user(alice.id) == 0


def test_passed_deadline_fails_fast(token_store, alice, clock):
    with pytest.raises(StorageFailure):
        token_store.save(alice.id, "hash-a", clock.now + timedelta(days=7), deadline=time.monotonic() - 1)
    assert token_store.count_for_user(alice.id) == 0
