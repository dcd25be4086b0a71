"""Persistence of issued refresh tokens.

Authorization lookups always go through the pair ``(token value, user id)``;
there is deliberately no lookup by value alone.

Values that were rotated away or logged out are remembered in
``revoked_refresh_tokens`` until they would have expired, and are never
stored again.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import StorageError
from .models import RefreshToken, RevokedRefreshToken

logger = logging.getLogger(__name__)


class RefreshTokenStore:
    """Insert, find, rotate and revoke refresh token rows within one session."""

    def __init__(self, session: Session, ttl: Optional[timedelta] = None) -> None:
        self.session = session
        self.ttl = ttl or timedelta(days=settings.refresh_token_expire_days)

    def _fail(self, operation: str, exc: SQLAlchemyError) -> StorageError:
        self.session.rollback()
        logger.exception("refresh token store %s failed", operation, exc_info=exc)
        return StorageError()

    # Helpers below only stage changes; the public methods commit.

    def _add(
        self,
        user_id: str,
        token_value: str,
        device: Optional[str],
        expires_at: Optional[datetime],
        now: datetime,
    ) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            refresh_token=token_value,
            device=device,
            created_at=now,
            updated_at=now,
            expires_at=expires_at or now + self.ttl,
        )
        self.session.add(record)
        return record

    def _delete(self, token_value: str, user_id: str) -> int:
        return (
            self.session.query(RefreshToken)
            .filter(
                RefreshToken.refresh_token == token_value,
                RefreshToken.user_id == user_id,
            )
            .delete(synchronize_session=False)
        )

    def _revoked(self, token_value: str, user_id: str) -> bool:
        return (
            self.session.query(RevokedRefreshToken.id)
            .filter(
                RevokedRefreshToken.refresh_token == token_value,
                RevokedRefreshToken.user_id == user_id,
            )
            .first()
            is not None
        )

    def _record_revocation(self, token_value: str, user_id: str, now: datetime) -> None:
        if self._revoked(token_value, user_id):
            return
        self.session.add(
            RevokedRefreshToken(
                user_id=user_id,
                refresh_token=token_value,
                created_at=now,
                expires_at=now + self.ttl,
            )
        )

    def _stored(self, token_value: str, user_id: str) -> bool:
        return (
            self.session.query(RefreshToken.id)
            .filter(
                RefreshToken.refresh_token == token_value,
                RefreshToken.user_id == user_id,
            )
            .first()
            is not None
        )

    def insert(
        self,
        user_id: str,
        token_value: str,
        device: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RefreshToken:
        try:
            record = self._add(user_id, token_value, device, expires_at, datetime.now(timezone.utc))
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("insert", exc) from exc
        return record

    def find(self, token_value: str, user_id: str) -> Optional[RefreshToken]:
        try:
            return (
                self.session.query(RefreshToken)
                .filter(
                    and_(
                        RefreshToken.refresh_token == token_value,
                        RefreshToken.user_id == user_id,
                    )
                )
                .first()
            )
        except SQLAlchemyError as exc:
            raise self._fail("find", exc) from exc

    def is_revoked(self, token_value: str, user_id: str) -> bool:
        try:
            return self._revoked(token_value, user_id)
        except SQLAlchemyError as exc:
            raise self._fail("is_revoked", exc) from exc

    def delete_by_value_and_user(self, token_value: str, user_id: str) -> int:
        """Delete matching rows and return how many went; absent rows are not an error."""
        try:
            deleted = self._delete(token_value, user_id)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("delete", exc) from exc
        return deleted

    def revoke(self, token_value: str, user_id: str) -> int:
        """Delete the token and remember it so it can never be stored again."""
        try:
            deleted = self._delete(token_value, user_id)
            self._record_revocation(token_value, user_id, datetime.now(timezone.utc))
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("revoke", exc) from exc
        return deleted

    def rotate(
        self,
        user_id: str,
        new_token_value: str,
        old_token_value: Optional[str] = None,
        device: Optional[str] = None,
    ) -> Tuple[int, bool]:
        """Replace ``old_token_value`` with ``new_token_value`` in one transaction.

        Returns ``(deleted, inserted)``. The new value is not inserted when it
        is already stored or has been revoked, which makes a repeated or late
        job harmless.
        """
        now = datetime.now(timezone.utc)
        inserted = False
        try:
            deleted = 0
            if old_token_value:
                deleted = self._delete(old_token_value, user_id)
                self._record_revocation(old_token_value, user_id, now)
            if self._revoked(new_token_value, user_id):
                logger.info("skipping rotation to a revoked refresh token user=%s", user_id)
            elif not self._stored(new_token_value, user_id):
                self._add(user_id, new_token_value, device, None, now)
                inserted = True
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("rotate", exc) from exc
        return deleted, inserted

    def delete_all_for_user(self, user_id: str) -> int:
        # Normally done by ON DELETE CASCADE when the user row goes away.
        try:
            deleted = (
                self.session.query(RefreshToken)
                .filter(RefreshToken.user_id == user_id)
                .delete(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("delete_all", exc) from exc
        return deleted

    def delete_expired(self, now: Optional[datetime] = None) -> int:
        """Purge expired tokens and revocation records; returns tokens removed."""
        cutoff = now or datetime.now(timezone.utc)
        try:
            deleted = (
                self.session.query(RefreshToken)
                .filter(RefreshToken.expires_at <= cutoff)
                .delete(synchronize_session=False)
            )
            self.session.query(RevokedRefreshToken).filter(
                RevokedRefreshToken.expires_at <= cutoff
            ).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("purge", exc) from exc
        return deleted
