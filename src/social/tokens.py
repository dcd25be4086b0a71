"""Signing and verification of access and refresh tokens.

Both token kinds are HS256 JWTs carrying ``sub`` (user id), ``role``,
``type``, ``iat``, ``exp`` and a random ``jti``. They are signed with two
distinct secrets handed to :class:`TokenCodec` at construction, so a refresh
token can never pass as an access token or the other way round.

Verification never raises for bad input. It reports one of three outcomes:

* ``valid``   - signature, structure and expiry are all fine
* ``expired`` - signature and structure are fine but ``exp`` has passed;
  the claims are still returned so the caller can attempt a refresh
* ``invalid`` - anything else; no claims are returned
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt

from .config import MIN_SECRET_LENGTH, Settings, get_settings
from .errors import ConfigError

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "role", "type", "iat", "exp"]


class TokenType(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenStatus(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True)
class Identity:
    """Who is making the request. Lives for one request only."""

    user_id: str
    role: str


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None

    @property
    def identity(self) -> Identity:
        return Identity(user_id=self.user_id, role=self.role)


@dataclass(frozen=True)
class VerifyResult:
    status: TokenStatus
    claims: Optional[TokenClaims] = None

    @property
    def is_valid(self) -> bool:
        return self.status is TokenStatus.VALID


INVALID = VerifyResult(TokenStatus.INVALID)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_millisecond(moment: datetime) -> datetime:
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


def _timestamp(moment: datetime) -> float:
    return round(moment.timestamp(), 3)


class TokenCodec:
    """Issue and verify access/refresh tokens with injected secrets."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=5),
        refresh_ttl: timedelta = timedelta(days=30),
    ) -> None:
        for name, secret in (("access", access_secret), ("refresh", refresh_secret)):
            if not secret or len(secret.strip()) < MIN_SECRET_LENGTH:
                raise ConfigError(
                    f"{name} token secret must be at least {MIN_SECRET_LENGTH} characters"
                )
        if access_secret == refresh_secret:
            raise ConfigError("access and refresh token secrets must differ")
        if not algorithm.startswith("HS") or algorithm not in jwt.algorithms.get_default_algorithms():
            raise ConfigError(f"unsupported signing algorithm: {algorithm}")
        if access_ttl <= timedelta(0) or refresh_ttl <= timedelta(0):
            raise ConfigError("token lifetimes must be positive")

        self._secrets = {TokenType.ACCESS: access_secret, TokenType.REFRESH: refresh_secret}
        self._ttls = {TokenType.ACCESS: access_ttl, TokenType.REFRESH: refresh_ttl}
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            access_secret=settings.access_token_secret.get_secret_value(),
            refresh_secret=settings.refresh_token_secret.get_secret_value(),
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    @property
    def access_ttl(self) -> timedelta:
        return self._ttls[TokenType.ACCESS]

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[TokenType.REFRESH]

    def issue_access(
        self, identity: Identity, now: Optional[datetime] = None, token_id: Optional[str] = None
    ) -> str:
        return self._issue(TokenType.ACCESS, identity, now, token_id)

    def issue_refresh(
        self, identity: Identity, now: Optional[datetime] = None, token_id: Optional[str] = None
    ) -> str:
        return self._issue(TokenType.REFRESH, identity, now, token_id)

    def _issue(
        self,
        token_type: TokenType,
        identity: Identity,
        now: Optional[datetime],
        token_id: Optional[str],
    ) -> str:
        issued_at = _to_millisecond(now or _utcnow())
        payload: Dict[str, Any] = {
            "sub": str(identity.user_id),
            "role": str(identity.role),
            "type": token_type.value,
            # Millisecond timestamps; PyJWT would truncate datetimes to whole seconds.
            "iat": _timestamp(issued_at),
            "exp": _timestamp(issued_at + self._ttls[token_type]),
            "jti": token_id or uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secrets[token_type], algorithm=self.algorithm)

    def verify(
        self, token: Optional[str], token_type: TokenType, now: Optional[datetime] = None
    ) -> VerifyResult:
        """Classify ``token`` as valid, expired or invalid for ``token_type``."""
        if not token or not isinstance(token, str):
            return INVALID
        try:
            payload = jwt.decode(
                token,
                self._secrets[token_type],
                algorithms=[self.algorithm],
                options={
                    "require": REQUIRED_CLAIMS,
                    # Expiry is judged below so expired claims can be returned.
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError:
            return INVALID
        except (TypeError, ValueError):
            logger.debug("malformed token rejected", exc_info=True)
            return INVALID

        claims = self._claims_from_payload(payload)
        if claims is None or claims.token_type is not token_type:
            return INVALID

        current = now or _utcnow()
        if claims.expires_at <= current:
            return VerifyResult(TokenStatus.EXPIRED, claims)
        return VerifyResult(TokenStatus.VALID, claims)

    def verify_access(self, token: Optional[str], now: Optional[datetime] = None) -> VerifyResult:
        return self.verify(token, TokenType.ACCESS, now)

    def verify_refresh(self, token: Optional[str], now: Optional[datetime] = None) -> VerifyResult:
        return self.verify(token, TokenType.REFRESH, now)

    @staticmethod
    def _claims_from_payload(payload: Dict[str, Any]) -> Optional[TokenClaims]:
        sub, role = payload.get("sub"), payload.get("role")
        if not isinstance(sub, str) or not sub or not isinstance(role, str) or not role:
            return None
        try:
            token_type = TokenType(payload["type"])
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
        jti = payload.get("jti")
        return TokenClaims(
            user_id=sub,
            role=role,
            token_type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=jti if isinstance(jti, str) else None,
        )


@lru_cache
def get_token_codec() -> TokenCodec:
    """Dependency returning the codec built from application settings."""
    return TokenCodec.from_settings(get_settings())
