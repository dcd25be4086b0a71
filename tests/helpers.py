"""Shared values and helpers for the test modules."""

from datetime import datetime, timedelta, timezone

from social.database import SessionLocal
from social.store import RefreshTokenStore
from social.tokens import Identity

TEST_PASSWORD = "Passw0rd!"


def expired_access_token(codec, user_id, role="user", by=timedelta(minutes=1)):
    """An access token for ``user_id`` whose expiry passed ``by`` ago."""
    issued = datetime.now(timezone.utc) - codec.access_ttl - by
    return codec.issue_access(Identity(user_id=user_id, role=role), now=issued)


def is_stored(token, user_id):
    session = SessionLocal()
    try:
        return RefreshTokenStore(session).find(token, user_id) is not None
    finally:
        session.close()
