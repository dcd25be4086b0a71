from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from social.errors import StorageError
from social.models import RefreshToken, RevokedRefreshToken, User
from social.store import RefreshTokenStore


@pytest.fixture
def store(db_session):
    return RefreshTokenStore(db_session)


def test_find_requires_value_and_owner(store, user_factory):
    alice, bob = user_factory(), user_factory()
    store.insert(alice, "token-a", device="pytest")

    assert store.find("token-a", alice).device == "pytest"
    assert store.find("token-a", bob) is None
    assert store.find("token-b", alice) is None


def test_insert_sets_expiry_from_ttl(db_session, user_factory):
    alice = user_factory()
    before = datetime.now(timezone.utc)

    record = RefreshTokenStore(db_session, ttl=timedelta(days=30)).insert(alice, "token-a")
    # SQLite hands datetimes back without tzinfo.
    expires_at = record.expires_at.replace(tzinfo=timezone.utc)

    assert expires_at - before >= timedelta(days=30) - timedelta(seconds=1)
    assert expires_at - before < timedelta(days=30, minutes=1)


def test_delete_is_idempotent(store, user_factory):
    alice = user_factory()
    store.insert(alice, "token-a")

    assert store.delete_by_value_and_user("token-a", alice) == 1
    assert store.delete_by_value_and_user("token-a", alice) == 0
    assert store.find("token-a", alice) is None


def test_delete_is_scoped_to_owner(store, user_factory):
    alice, bob = user_factory(), user_factory()
    store.insert(alice, "token-a")

    assert store.delete_by_value_and_user("token-a", bob) == 0
    assert store.find("token-a", alice) is not None


def test_delete_all_for_user(store, user_factory):
    alice, bob = user_factory(), user_factory()
    store.insert(alice, "laptop")
    store.insert(alice, "phone")
    store.insert(bob, "bob-laptop")

    assert store.delete_all_for_user(alice) == 2
    assert store.find("bob-laptop", bob) is not None


def test_tokens_go_away_with_their_user(store, db_session, user_factory):
    alice = user_factory()
    store.insert(alice, "token-a")

    db_session.query(User).filter(User.id == alice).delete(synchronize_session=False)
    db_session.commit()

    assert db_session.query(RefreshToken).count() == 0


def test_delete_expired_keeps_live_tokens(store, db_session, user_factory):
    alice = user_factory()
    now = datetime.now(timezone.utc)
    store.insert(alice, "stale", expires_at=now - timedelta(minutes=1))
    store.insert(alice, "live", expires_at=now + timedelta(days=1))

    assert store.delete_expired(now=now) == 1
    assert store.find("stale", alice) is None
    assert store.find("live", alice) is not None


def test_backend_failure_becomes_storage_error(store, db_session, user_factory, monkeypatch):
    alice = user_factory()

    def broken_commit():
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", broken_commit)

    with pytest.raises(StorageError) as excinfo:
        store.insert(alice, "token-a")
    assert excinfo.value.message == "Internal server error"


def test_revoked_token_is_never_stored_again(store, user_factory):
    alice = user_factory()
    store.insert(alice, "token-a")

    assert store.revoke("token-a", alice) == 1
    assert store.revoke("token-a", alice) == 0
    assert store.is_revoked("token-a", alice)
    assert store.rotate(alice, "token-a") == (0, False)
    assert store.find("token-a", alice) is None


def test_revocation_is_scoped_to_owner(store, user_factory):
    alice, bob = user_factory(), user_factory()
    store.insert(bob, "token-b")

    store.revoke("token-b", alice)

    assert not store.is_revoked("token-b", bob)
    assert store.find("token-b", bob) is not None


def test_rotate_replaces_in_one_step(store, user_factory):
    alice = user_factory()
    store.insert(alice, "r1")

    assert store.rotate(alice, "r2", old_token_value="r1", device="pytest") == (1, True)
    assert store.rotate(alice, "r2", old_token_value="r1", device="pytest") == (0, False)
    assert store.find("r1", alice) is None
    assert store.is_revoked("r1", alice)
    assert store.find("r2", alice).device == "pytest"


def test_delete_expired_drops_old_revocation_records(store, db_session, user_factory):
    alice = user_factory()
    store.revoke("token-a", alice)

    store.delete_expired(now=datetime.now(timezone.utc) + timedelta(days=31))

    assert db_session.query(RevokedRefreshToken).count() == 0
