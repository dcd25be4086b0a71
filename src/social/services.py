"""Service layer for sign-up, sign-in, logout and the current user's profile."""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import Counter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import SessionLocal
from .errors import INVALID_CREDENTIALS, ConflictError, NotFound, StorageError, Unauthorized
from .hashing import burn_verification_time, hash_password, verify_password
from .models import Role, User
from .store import RefreshTokenStore
from .tasks import enqueue_revocation
from .tokens import Identity, TokenCodec


logger = logging.getLogger(__name__)

SIGNUP_COUNTER = Counter("signups_total", "Total accounts created")
SIGNIN_COUNTER = Counter("signins_total", "Sign-in attempts by result", ["result"])

CONFLICT_MESSAGES = {
    "email": "Email already exists",
    "username": "Username already taken",
}

# Constraint names (PostgreSQL) and column references (SQLite) per field.
_CONFLICT_MARKERS = {
    "email": ("users_email_unique", "users.email"),
    "username": ("users_username_unique", "users.username"),
}


@dataclass(frozen=True)
class SignInResult:
    identity: Identity
    access_token: str
    refresh_token: str


def _handle_service_error(session: Session, exc: SQLAlchemyError) -> StorageError:
    """Rollback the transaction and turn a database failure into a StorageError."""
    session.rollback()
    logger.exception("service layer error", exc_info=exc)
    return StorageError()


def _conflicting_field(exc: IntegrityError) -> Optional[str]:
    orig = exc.orig
    constraint = getattr(getattr(orig, "diag", None), "constraint_name", None)
    text = constraint or str(orig)
    for field, markers in _CONFLICT_MARKERS.items():
        if any(marker in text for marker in markers):
            return field
    return None


def sign_up(username: str, email: str, password: str) -> str:
    """Create an account and return its id.

    Raises
    ------
    ConflictError
        If the email or username is already in use; ``field`` says which.
    StorageError
        On any other database failure.
    """
    password_hash = hash_password(password)
    session: Session = SessionLocal()
    try:
        user = User(
            username=username,
            email=email,
            password_hash=password_hash,
            role=Role.USER,
        )
        session.add(user)
        session.commit()
        user_id = user.id
    except IntegrityError as exc:
        session.rollback()
        field = _conflicting_field(exc)
        logger.info("sign-up rejected, duplicate %s", field or "value")
        raise ConflictError(CONFLICT_MESSAGES.get(field, "Bad Request"), field=field) from exc
    except SQLAlchemyError as exc:
        raise _handle_service_error(session, exc) from exc
    finally:
        session.close()

    SIGNUP_COUNTER.inc()
    logger.info("created user id=%s", user_id)
    return user_id


def sign_in(
    email: str, password: str, codec: TokenCodec, device: Optional[str] = None
) -> SignInResult:
    """Check credentials, mint a token pair and store the refresh token.

    Unknown email and wrong password raise the very same ``Unauthorized``.
    """
    session: Session = SessionLocal()
    try:
        user = session.query(User).filter(User.email == email).first()
        if user is None:
            burn_verification_time(password)
            SIGNIN_COUNTER.labels(result="unknown_account").inc()
            logger.info("sign-in failed: no matching account")
            raise Unauthorized(INVALID_CREDENTIALS)
        if not verify_password(password, user.password_hash):
            SIGNIN_COUNTER.labels(result="bad_password").inc()
            logger.info("sign-in failed: wrong password for user id=%s", user.id)
            raise Unauthorized(INVALID_CREDENTIALS)

        role = user.role.value if isinstance(user.role, Role) else str(user.role)
        identity = Identity(user_id=user.id, role=role)
        access_token = codec.issue_access(identity)
        refresh_token = codec.issue_refresh(identity)
        # No previous session to race with, so the first token is stored inline.
        RefreshTokenStore(session, ttl=codec.refresh_ttl).insert(
            identity.user_id, refresh_token, device
        )
    except SQLAlchemyError as exc:
        raise _handle_service_error(session, exc) from exc
    finally:
        session.close()

    SIGNIN_COUNTER.labels(result="success").inc()
    logger.info("user id=%s signed in", identity.user_id)
    return SignInResult(identity=identity, access_token=access_token, refresh_token=refresh_token)


def sign_out(
    user_id: str,
    refresh_token: Optional[str],
    rotated_refresh_token: Optional[str] = None,
) -> int:
    """Forget the caller's refresh token(s); returns the rows deleted now.

    ``rotated_refresh_token`` is the value minted by a silent refresh during the
    logout request itself. Its rotation job may not have run yet, so it is
    marked revoked here, which stops that job from storing it, and a revocation
    is also queued behind the job in case the job already stored it.
    """
    deleted = 0
    session: Session = SessionLocal()
    try:
        store = RefreshTokenStore(session)
        if refresh_token:
            deleted = store.revoke(refresh_token, user_id)
        if rotated_refresh_token:
            deleted += store.revoke(rotated_refresh_token, user_id)
    finally:
        session.close()
    if rotated_refresh_token:
        enqueue_revocation(rotated_refresh_token, user_id)
    logger.info("user id=%s logged out, %d refresh token(s) removed", user_id, deleted)
    return deleted


def get_profile(user_id: str) -> Dict[str, object]:
    session: Session = SessionLocal()
    try:
        user = session.query(User).filter(User.id == user_id).first()
        if user is None:
            raise NotFound("User not found")
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role.value if isinstance(user.role, Role) else str(user.role),
            "email_verified": bool(user.email_verified),
        }
    except SQLAlchemyError as exc:
        raise _handle_service_error(session, exc) from exc
    finally:
        session.close()
