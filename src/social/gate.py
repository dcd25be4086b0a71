"""Per-request authentication with silent refresh of expired access tokens.

The flow for every protected request:

1. No bearer token: reject.
2. Access token valid: accept, no I/O at all.
3. Access token invalid: reject.
4. Access token expired: read the refresh token (cookie, then JSON body),
   require it to be valid, to belong to the same subject and to still be
   stored for that subject. Then mint a new pair, return the access token in
   the ``Authorization`` response header and the refresh token in the cookie,
   and queue the rotation for the worker.

Every rejection is a bare 401 that also expires the refresh cookie. Nothing in
the response says which check failed.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import Counter
from starlette.concurrency import run_in_threadpool

from .config import settings
from .database import SessionLocal
from .errors import Unauthorized
from .store import RefreshTokenStore
from .tasks import RotationJob, enqueue_rotation
from .tokens import Identity, TokenClaims, TokenCodec, TokenStatus, get_token_codec

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

GATE_COUNTER = Counter(
    "auth_gate_requests_total",
    "Authentication gate decisions by outcome",
    ["outcome"],
)


@dataclass(frozen=True)
class AuthContext:
    """Result of authenticating one request."""

    identity: Identity
    # Set when this request rotated the session; the value the client now holds.
    rotated_refresh_token: Optional[str] = None


def set_refresh_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


async def read_refresh_token(request: Request) -> Optional[str]:
    """Refresh token from the cookie, falling back to a JSON body field."""
    token = request.cookies.get(settings.refresh_cookie_name)
    if token:
        return token
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError, RecursionError):
        return None
    if isinstance(body, dict):
        value = body.get("refreshToken")
        if isinstance(value, str) and value:
            return value
    return None


def _reject(reason: str) -> Unauthorized:
    GATE_COUNTER.labels(outcome="rejected").inc()
    logger.info("authentication rejected: %s", reason)
    return Unauthorized(clear_refresh_cookie=True)


def _refresh_token_is_stored(token_value: str, user_id: str) -> bool:
    session = SessionLocal()
    try:
        return RefreshTokenStore(session).find(token_value, user_id) is not None
    finally:
        session.close()


async def _silent_refresh(
    request: Request,
    response: Response,
    codec: TokenCodec,
    access_claims: TokenClaims,
) -> AuthContext:
    refresh_token = await read_refresh_token(request)
    if not refresh_token:
        raise _reject("access token expired and no refresh token")

    refresh = codec.verify_refresh(refresh_token)
    if refresh.status is not TokenStatus.VALID:
        raise _reject(f"refresh token {refresh.status.value}")

    if refresh.claims.user_id != access_claims.user_id:
        logger.warning(
            "refresh token subject %s presented with access token of %s",
            refresh.claims.user_id,
            access_claims.user_id,
        )
        raise _reject("subject mismatch")

    identity = refresh.claims.identity
    if not await run_in_threadpool(_refresh_token_is_stored, refresh_token, identity.user_id):
        raise _reject("refresh token not on record")

    new_access_token = codec.issue_access(identity)
    new_refresh_token = codec.issue_refresh(identity)
    await run_in_threadpool(
        enqueue_rotation,
        RotationJob(
            new_token_value=new_refresh_token,
            user_id=identity.user_id,
            device=request.headers.get("user-agent"),
            old_token_value=refresh_token,
        ),
    )

    response.headers["Authorization"] = f"Bearer {new_access_token}"
    set_refresh_cookie(response, new_refresh_token)
    logger.info("silently refreshed session user=%s", identity.user_id)
    return AuthContext(identity=identity, rotated_refresh_token=new_refresh_token)


async def authenticate(
    request: Request,
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    codec: TokenCodec = Depends(get_token_codec),
) -> AuthContext:
    """Dependency guarding protected routes; fails closed on any doubt."""
    if credentials is None or not credentials.credentials:
        raise _reject("missing access token")

    access = codec.verify_access(credentials.credentials)
    if access.status is TokenStatus.VALID:
        GATE_COUNTER.labels(outcome="valid").inc()
        return AuthContext(identity=access.claims.identity)
    if access.status is TokenStatus.INVALID:
        raise _reject("invalid access token")

    try:
        context = await _silent_refresh(request, response, codec, access.claims)
    except Unauthorized:
        raise
    except Exception:
        logger.exception("silent refresh failed")
        raise _reject("silent refresh error")
    GATE_COUNTER.labels(outcome="refreshed").inc()
    return context


def current_identity(context: AuthContext = Depends(authenticate)) -> Identity:
    return context.identity
