"""OAuth provider and connection schemas"""

from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import AnyHttpUrl, BaseModel, Field, StringConstraints, field_validator

OAuthParamStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2048)]


class OAuthCallbackParams(BaseModel):
    """Query parameters delivered to the callback endpoint"""
    code: OAuthParamStr
    state: OAuthParamStr


class AuthorizationResponse(BaseModel):
    authorization_url: str
    state: str
    provider_id: int


class OAuthProviderSummary(BaseModel):
    """Public view of a provider (no credentials)"""
    id: int
    name: str
    url_name: str
    enabled: bool
    is_default: bool

    class Config:
        from_attributes = True


class OAuthProviderResponse(OAuthProviderSummary):
    """Admin view of a provider; the client secret is never echoed"""
    client_id: str
    authorization_url: str
    token_url: str
    userinfo_url: str
    callback_url: str
    scopes: List[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class OAuthProviderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1, max_length=255)
    authorization_url: AnyHttpUrl
    token_url: AnyHttpUrl
    userinfo_url: AnyHttpUrl
    callback_url: Optional[AnyHttpUrl] = None
    scopes: List[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    enabled: bool = True
    is_default: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Provider name must not be blank")
        return v


class OAuthProviderUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    client_id: Optional[str] = Field(default=None, min_length=1, max_length=255)
    client_secret: Optional[str] = Field(default=None, min_length=1, max_length=255)
    authorization_url: Optional[AnyHttpUrl] = None
    token_url: Optional[AnyHttpUrl] = None
    userinfo_url: Optional[AnyHttpUrl] = None
    callback_url: Optional[AnyHttpUrl] = None
    scopes: Optional[List[str]] = None
    enabled: Optional[bool] = None
    is_default: Optional[bool] = None


class OAuthProviderPreset(BaseModel):
    """Well-known provider set up from its base URL"""
    base_url: AnyHttpUrl
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1, max_length=255)


class ConnectionResponse(BaseModel):
    id: int
    provider_id: int
    provider: OAuthProviderSummary
    provider_user_id: str
    expires_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class UserConnectionsResponse(BaseModel):
    connections: List[ConnectionResponse]
    all_providers: List[OAuthProviderSummary]
