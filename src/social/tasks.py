"""Celery tasks that persist refresh token rotation and revocation."""

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .errors import StorageError
from .store import RefreshTokenStore
from .worker import celery_app


logger = logging.getLogger(__name__)

ROTATION_COUNTER = Counter(
    "refresh_token_rotations_total",
    "Refresh token rotation jobs by result",
    ["result"],
)
PURGED_COUNTER = Counter(
    "refresh_tokens_purged_total", "Total expired refresh tokens purged"
)


@dataclass(frozen=True)
class RotationJob:
    """Replace ``old_token_value`` with ``new_token_value`` for one user.

    ``old_token_value`` is None for a first session, in which case only the
    insert happens.
    """

    new_token_value: str
    user_id: str
    device: Optional[str] = None
    old_token_value: Optional[str] = None

    def to_payload(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Optional[str]]) -> "RotationJob":
        return cls(
            new_token_value=payload["new_token_value"],
            user_id=payload["user_id"],
            device=payload.get("device"),
            old_token_value=payload.get("old_token_value"),
        )


@dataclass
class RotationOutcome:
    deleted: int = 0
    # False when the new value was already stored or has been revoked.
    inserted: bool = False
    delete_failed: bool = False
    insert_failed: bool = False

    @property
    def ok(self) -> bool:
        return not (self.delete_failed or self.insert_failed)


def rotate_refresh_token_in_db(
    job: RotationJob, session_factory: Optional[Callable[[], Session]] = None
) -> RotationOutcome:
    """Delete the old token, remember it as revoked and store the new one.

    All of it happens in one transaction. If that fails, the new token is
    still stored on its own: a stale token left behind is preferable to losing
    the new session. A repeated or out-of-order job never stores a value that
    was already rotated away or logged out.
    """
    outcome = RotationOutcome()
    session = (session_factory or SessionLocal)()
    try:
        store = RefreshTokenStore(session)
        try:
            outcome.deleted, outcome.inserted = store.rotate(
                job.user_id, job.new_token_value, job.old_token_value, job.device
            )
            return outcome
        except StorageError:
            if not job.old_token_value:
                outcome.insert_failed = True
                logger.warning("could not store refresh token user=%s", job.user_id)
                return outcome
            outcome.delete_failed = True
            logger.warning("could not delete rotated refresh token user=%s", job.user_id)

        try:
            _, outcome.inserted = store.rotate(job.user_id, job.new_token_value, device=job.device)
        except StorageError:
            outcome.insert_failed = True
            logger.warning("could not store rotated refresh token user=%s", job.user_id)
        return outcome
    finally:
        session.close()


def revoke_refresh_token_in_db(
    token_value: str, user_id: str, session_factory: Optional[Callable[[], Session]] = None
) -> int:
    session = (session_factory or SessionLocal)()
    try:
        return RefreshTokenStore(session).revoke(token_value, user_id)
    finally:
        session.close()


@celery_app.task(
    bind=True,
    name="social.tasks.rotate_refresh_token",
    max_retries=settings.rotation_max_retries,
    default_retry_delay=settings.rotation_retry_delay,
)
def rotate_refresh_token(self, payload: Dict[str, Optional[str]]) -> Dict[str, object]:
    """Persist one rotation; retried a bounded number of times, then dropped."""
    job = RotationJob.from_payload(payload)
    outcome = rotate_refresh_token_in_db(job)
    if outcome.ok:
        ROTATION_COUNTER.labels(result="success").inc()
        logger.info("rotated refresh token user=%s deleted=%d", job.user_id, outcome.deleted)
        return asdict(outcome)

    if self.request.retries < self.max_retries:
        ROTATION_COUNTER.labels(result="retry").inc()
        raise self.retry()

    ROTATION_COUNTER.labels(result="failed").inc()
    logger.error(
        "giving up refresh token rotation user=%s after %d retries (delete_failed=%s insert_failed=%s)",
        job.user_id,
        self.request.retries,
        outcome.delete_failed,
        outcome.insert_failed,
    )
    return asdict(outcome)


@celery_app.task(
    bind=True,
    name="social.tasks.revoke_refresh_token",
    max_retries=settings.rotation_max_retries,
    default_retry_delay=settings.rotation_retry_delay,
)
def revoke_refresh_token(self, token_value: str, user_id: str) -> int:
    try:
        return revoke_refresh_token_in_db(token_value, user_id)
    except StorageError as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc)
        logger.error("giving up refresh token revocation user=%s", user_id)
        return 0


@celery_app.task(name="social.tasks.purge_expired_refresh_tokens")
def purge_expired_refresh_tokens() -> int:
    """Delete refresh tokens past their expiry; returns the number removed."""
    session = SessionLocal()
    try:
        deleted = RefreshTokenStore(session).delete_expired()
    finally:
        session.close()
    PURGED_COUNTER.inc(deleted)
    logger.info("purged %d expired refresh tokens", deleted)
    return deleted


def enqueue_rotation(job: RotationJob) -> None:
    """Hand a rotation to the worker without waiting for the database."""
    rotate_refresh_token.apply_async(args=[job.to_payload()], queue=settings.rotation_queue)


def enqueue_revocation(token_value: str, user_id: str) -> None:
    revoke_refresh_token.apply_async(args=[token_value, user_id], queue=settings.rotation_queue)
