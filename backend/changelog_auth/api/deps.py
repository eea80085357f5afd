"""API dependencies - token extraction, authentication and authorization"""

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from changelog_auth.config import settings
from changelog_auth.core.database import get_db
from changelog_auth.core.exceptions import AuthenticationError, AuthorizationError
from changelog_auth.core.result import AuthFailure, Err
from changelog_auth.models.user import User
from changelog_auth.schemas.user import UserRole
from changelog_auth.services.session_service import SessionService, session_service

# HTTP Bearer token scheme; the cookie is the fallback, so no auto-error
security = HTTPBearer(auto_error=False)


def get_session_service() -> SessionService:
    return session_service


def extract_access_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Bearer header first, then the access-token cookie."""
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(settings.ACCESS_TOKEN_COOKIE)


def get_current_user(
    token: Optional[str] = Depends(extract_access_token),
    db: Session = Depends(get_db),
    sessions: SessionService = Depends(get_session_service),
) -> User:
    """
    Get current authenticated user from the access token

    Args:
        token: Access token taken from the request
        db: Database session
        sessions: Session service

    Returns:
        Current user

    Raises:
        AuthenticationError: If the token is missing, invalid or expired, or the user is gone
    """
    if not token:
        raise AuthenticationError("Not authenticated", code=AuthFailure.MALFORMED.value)

    result = sessions.validate_request(db, token)
    if isinstance(result, Err):
        raise AuthenticationError.from_failure(result.kind)
    return result.value


def get_current_admin_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if current_user.role != UserRole.ADMIN.value:
        raise AuthorizationError("Admin access required")
    return current_user
