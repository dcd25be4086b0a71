from .refresh_token import RefreshToken, RevokedRefreshToken
from .user import Role, User

__all__ = ["RefreshToken", "RevokedRefreshToken", "Role", "User"]
