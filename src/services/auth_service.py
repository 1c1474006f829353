"""Access token validation. Tokens are issued by the identity service."""

import jwt
import structlog

from src.config import get_settings

logger = structlog.get_logger(__name__)


class AuthService:
    """Decodes bearer tokens signed with the shared secret."""

    def __init__(self):
        self.settings = get_settings()

    def validate_access_token(self, token: str) -> dict:
        """Decode and validate a JWT access token.

        Args:
            token: Encoded JWT string

        Returns:
            Decoded payload dict with sub and optional is_admin

        Raises:
            ValueError: If the token is invalid, expired, or malformed
        """
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
            )
        except jwt.ExpiredSignatureError:
            raise ValueError("Access token has expired")
        except jwt.InvalidTokenError as e:
            raise ValueError(f"Invalid access token: {e}")
