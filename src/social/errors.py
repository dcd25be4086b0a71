"""Error taxonomy shared by the HTTP layer, the auth flows and the token store.

Every :class:`APIError` is rendered by a single exception handler as
``{"message": ..., "errors": ...}``. Messages are safe to show to clients;
internal detail belongs in the server log only.
"""

from typing import Dict, List, Optional


class ConfigError(RuntimeError):
    """Fatal misconfiguration (missing or weak secrets, bad settings)."""


class APIError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    default_message = "Internal server error"
    # Whether the response should expire the refresh cookie.
    clear_refresh_cookie = False

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(APIError):
    status_code = 400
    default_message = "Bad Request"


class ConflictError(APIError):
    """Uniqueness violation; ``field`` names the column that collided."""

    status_code = 400
    default_message = "Bad Request"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class Unauthorized(APIError):
    status_code = 401
    default_message = "Unauthorized"

    def __init__(self, message: Optional[str] = None, clear_refresh_cookie: bool = False) -> None:
        super().__init__(message)
        self.clear_refresh_cookie = clear_refresh_cookie


class NotFound(APIError):
    status_code = 404
    default_message = "Not found"


class StorageError(APIError):
    """Transient backend failure. The client only ever sees the generic message."""

    status_code = 500
    default_message = "Internal server error"


INVALID_CREDENTIALS = "Invalid email/password"
