"""FastAPI dependencies for authentication and service wiring."""

from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.models.user import User
from src.services.auth_service import AuthService
from src.services.policy_engine import PolicyEngine

bearer_scheme = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> User:
    """Extract the current user from a JWT Bearer token.

    Raises:
        HTTPException 401: If the token is invalid, expired, or has no usable subject
    """
    auth_service = AuthService()
    try:
        payload = auth_service.validate_access_token(credentials.credentials)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return User(id=user_id, is_admin=bool(payload.get("is_admin", False)))


async def require_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """Require the current user to have admin privileges.

    Raises:
        HTTPException 403: If user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user


def get_policy_engine() -> PolicyEngine:
    return PolicyEngine()
