"""User and session schemas"""

from pydantic import BaseModel, EmailStr, Field, StringConstraints
from typing import Annotated, Optional
from datetime import datetime
from enum import Enum


class UserRole(str, Enum):
    """User role enumeration"""
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    VIEWER = "VIEWER"


# Opaque refresh tokens are url-safe base64 (secrets.token_urlsafe)
RefreshTokenStr = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=16, max_length=256, pattern=r"^[A-Za-z0-9_\-]+$"),
]


class LoginRequest(BaseModel):
    """Password login schema"""
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)


class RefreshTokenRequest(BaseModel):
    """Refresh request; the token may also arrive as a cookie"""
    refresh_token: Optional[RefreshTokenStr] = None


class LogoutRequest(BaseModel):
    """Logout request; the token may also arrive as a cookie"""
    refresh_token: Optional[str] = Field(default=None, max_length=256)


class UserResponse(BaseModel):
    """User response schema"""
    id: int
    email: str
    name: Optional[str]
    role: str
    created_at: Optional[datetime]
    last_login_at: Optional[datetime]

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """Access/refresh token pair"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
