"""FastAPI application exposing authentication and the current user's profile."""

import logging
import re
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from email_validator import EmailNotValidError, validate_email
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic_core import PydanticCustomError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from .config import settings
from .database import init_db
from .errors import INVALID_CREDENTIALS, APIError, StorageError, Unauthorized, ValidationError
from .gate import (
    AuthContext,
    authenticate,
    clear_refresh_cookie,
    current_identity,
    read_refresh_token,
    set_refresh_cookie,
)
from .services import get_profile, sign_in, sign_out, sign_up
from .tokens import Identity, TokenCodec, get_token_codec


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    # Clients pick the refreshed access token up from this header.
    expose_headers=["Authorization"],
)

SENSITIVE_RATE_LIMIT = "5/minute"
SENSITIVE_HOURLY_RATE_LIMIT = "100/hour"

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception("error handling %s %s", request.method, request.url.path)
        raise
    elapsed_ms = (time.perf_counter() - start) * 1000
    REQUEST_COUNTER.labels(
        method=request.method,
        endpoint=request.url.path,
        status=str(response.status_code),
    ).inc()
    logger.info(
        "response %s %s status %s %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(APIError)
async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    content: Dict[str, object] = {"message": exc.message}
    if exc.errors:
        content["errors"] = exc.errors
    response = JSONResponse(status_code=exc.status_code, content=content)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    if exc.clear_refresh_cookie:
        clear_refresh_cookie(response)
    return response


def _validation_error(errors: List[dict]) -> ValidationError:
    """Collapse pydantic errors into ``field -> [messages]`` plus a headline."""
    fields: Dict[str, List[str]] = {}
    for error in errors:
        path = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(path) or "body"
        messages = (error.get("ctx") or {}).get("problems") or [error.get("msg", "Invalid value")]
        fields.setdefault(field, []).extend(messages)
    if not fields:
        return ValidationError()
    first_field, first_messages = next(iter(fields.items()))
    return ValidationError(f"{first_field}: {first_messages[0]}", errors=fields)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": StorageError.default_message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return await handle_api_error(request, _validation_error(exc.errors()))


USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.]+$")
PASSWORD_MIN_LEN = 8
PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "Must contain one lowercase character"),
    (re.compile(r"[A-Z]"), "Must contain one uppercase character"),
    (re.compile(r"[0-9]"), "Must contain one number"),
    (re.compile(r"[!@#$%^&*(),.?\":{}|<>]"), "Must contain one special character"),
)


def password_problems(password: str) -> List[str]:
    """Every strength rule ``password`` breaks, in a stable order."""
    problems = []
    if len(password) < PASSWORD_MIN_LEN:
        problems.append(f"Password should be atleast {PASSWORD_MIN_LEN} characters")
    problems.extend(message for pattern, message in PASSWORD_RULES if not pattern.search(password))
    return problems


class SignUpRequest(BaseModel):
    """Request body for creating an account. Any ``role`` field is ignored."""

    username: str = Field(..., min_length=3, max_length=255)
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not USERNAME_PATTERN.match(v):
            raise PydanticCustomError(
                "username_format",
                "Only alphabets, numbers, underscores and dots are allowed",
            )
        return v

    @field_validator("email")
    @classmethod
    def validate_email_address(cls, v: str) -> str:
        try:
            # Normalized the same way EmailStr normalizes sign-in emails.
            return validate_email(v, check_deliverability=False).normalized
        except EmailNotValidError:
            raise PydanticCustomError("email_format", "Invalid email address")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        problems = password_problems(v)
        if problems:
            raise PydanticCustomError("password_strength", problems[0], {"problems": problems})
        return v


class SignUpResponse(BaseModel):
    id: str
    message: str


class SignInRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenPairResponse(BaseModel):
    """Access and refresh tokens, serialized in camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")


class MessageResponse(BaseModel):
    message: str


class ProfileResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    email_verified: bool


@app.get("/")
def root() -> Dict[str, str]:
    return {"message": "Social API"}


@app.get("/metrics")
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/auth/signup", response_model=SignUpResponse, status_code=201)
@limiter.limit(SENSITIVE_RATE_LIMIT)
@limiter.limit(SENSITIVE_HOURLY_RATE_LIMIT)
def signup(request: Request, payload: SignUpRequest) -> SignUpResponse:
    """Create a new account with the ``user`` role."""
    user_id = sign_up(payload.username, payload.email, payload.password)
    return SignUpResponse(id=user_id, message="User created successfully")


@app.post("/auth/signin", response_model=TokenPairResponse, response_model_by_alias=True)
@limiter.limit(SENSITIVE_RATE_LIMIT)
@limiter.limit(SENSITIVE_HOURLY_RATE_LIMIT)
async def signin(
    request: Request,
    response: Response,
    codec: TokenCodec = Depends(get_token_codec),
) -> TokenPairResponse:
    """Exchange email and password for a token pair and a refresh cookie.

    Malformed bodies get the same 401 as bad credentials.
    """
    try:
        payload = SignInRequest.model_validate(await request.json())
    except ValueError:
        logger.info("sign-in rejected: malformed body")
        raise Unauthorized(INVALID_CREDENTIALS)

    result = await run_in_threadpool(
        sign_in,
        payload.email,
        payload.password,
        codec,
        request.headers.get("user-agent"),
    )
    set_refresh_cookie(response, result.refresh_token)
    return TokenPairResponse(access_token=result.access_token, refresh_token=result.refresh_token)


@app.post("/auth/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    context: AuthContext = Depends(authenticate),
) -> MessageResponse:
    """End the caller's session; succeeds even without a refresh token."""
    refresh_token: Optional[str] = await read_refresh_token(request)
    if refresh_token or context.rotated_refresh_token:
        try:
            await run_in_threadpool(
                sign_out,
                context.identity.user_id,
                refresh_token,
                context.rotated_refresh_token,
            )
        except StorageError:
            # The row expires on its own; the client is logged out regardless.
            logger.warning("logout could not delete refresh token user=%s", context.identity.user_id)
    clear_refresh_cookie(response)
    return MessageResponse(message="Logged out successfully")


@app.get("/users/me", response_model=ProfileResponse)
def get_me(identity: Identity = Depends(current_identity)) -> ProfileResponse:
    """Return the authenticated user's profile."""
    return ProfileResponse(**get_profile(identity.user_id))


def not_implemented() -> JSONResponse:
    return JSONResponse(status_code=501, content={"message": "Not implemented"})


# Account maintenance flows are not offered yet.
for _path in (
    "/auth/forget-password",
    "/auth/change-email",
    "/auth/change-password",
    "/auth/verify-email",
):
    app.add_api_route(
        _path, not_implemented, methods=["POST"], status_code=501, include_in_schema=False
    )
