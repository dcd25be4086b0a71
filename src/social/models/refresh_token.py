import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text

from ..database import Base
from .user import utcnow


class RefreshToken(Base):
    """A refresh token issued to one device of one user.

    Rows are written at sign-in, replaced on every silent refresh and removed
    on logout, expiry purge, or together with their user.
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("refresh_tokens_user_id", "user_id"),
        Index("refresh_tokens_token", "refresh_token"),
        Index("refresh_tokens_token_user_id", "refresh_token", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    refresh_token = Column(Text, nullable=False)
    device = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class RevokedRefreshToken(Base):
    """A refresh token value that was rotated away or logged out.

    Kept until the token itself would have expired so that a late or
    redelivered rotation job cannot store the value again.
    """

    __tablename__ = "revoked_refresh_tokens"
    __table_args__ = (
        Index("revoked_refresh_tokens_token_user_id", "refresh_token", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    refresh_token = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
