"""Pydantic schemas for API validation"""

from changelog_auth.schemas.user import (
    UserRole,
    UserResponse,
    LoginRequest,
    TokenResponse,
    RefreshTokenRequest,
    LogoutRequest,
)
from changelog_auth.schemas.oauth import (
    AuthorizationResponse,
    ConnectionResponse,
    OAuthCallbackParams,
    OAuthProviderCreate,
    OAuthProviderPreset,
    OAuthProviderResponse,
    OAuthProviderSummary,
    OAuthProviderUpdate,
    UserConnectionsResponse,
)
from changelog_auth.schemas.response import ErrorResponse, SuccessResponse

__all__ = [
    "UserRole", "UserResponse", "LoginRequest", "TokenResponse", "RefreshTokenRequest", "LogoutRequest",
    "AuthorizationResponse", "ConnectionResponse", "OAuthCallbackParams",
    "OAuthProviderCreate", "OAuthProviderPreset", "OAuthProviderResponse", "OAuthProviderSummary",
    "OAuthProviderUpdate", "UserConnectionsResponse",
    "ErrorResponse", "SuccessResponse",
]
