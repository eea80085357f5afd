"""Authentication routes"""

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
import logging

from changelog_auth.config import settings
from changelog_auth.core.database import get_db
from changelog_auth.core.exceptions import AuthenticationError, DatabaseError
from changelog_auth.core.result import Err
from changelog_auth.schemas.oauth import ConnectionResponse, OAuthProviderSummary, UserConnectionsResponse
from changelog_auth.schemas.response import SuccessResponse
from changelog_auth.schemas.user import (
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    TokenResponse,
    UserResponse,
)
from changelog_auth.api.deps import get_current_user, get_session_service
from changelog_auth.api.responses import clear_session_cookies, error_response, set_session_cookies, token_response
from changelog_auth.models.audit import AuditTarget
from changelog_auth.models.oauth import OAuthConnection
from changelog_auth.models.user import User
from changelog_auth.services.audit_service import audit_service
from changelog_auth.services.oauth_providers import oauth_provider_service
from changelog_auth.services.rate_limiter import RateLimit, rate_limiter
from changelog_auth.services.session_service import SessionService
from changelog_auth.services.user_service import user_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/login", response_model=TokenResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    sessions: SessionService = Depends(get_session_service),
):
    """
    Login endpoint - authenticate with email and password, start a session

    Args:
        credentials: Email and password
        db: Database session

    Returns:
        Token pair and user info; both tokens are also set as cookies
    """
    client_ip = _client_ip(request)
    user_key = credentials.email.strip().lower()
    rate_limiter.enforce(
        "login",
        f"{client_ip}:{user_key}",
        (
            RateLimit(settings.LOGIN_RATE_LIMIT_PER_MINUTE, 60),
            RateLimit(settings.LOGIN_RATE_LIMIT_PER_HOUR, 3600),
        ),
        "Too many login attempts. Please try again later.",
    )

    user = user_service.authenticate_user(db, credentials.email, credentials.password)
    pair = sessions.issue(db, user)
    set_session_cookies(response, pair)
    audit_service.log_event(
        db,
        user_id=user.id,
        action="login",
        target_type=AuditTarget.USER,
        target_id=str(user.id),
        ip_address=client_ip,
        metadata={"method": "password"},
    )
    return token_response(pair, user)


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshTokenRequest] = None,
    db: Session = Depends(get_db),
    sessions: SessionService = Depends(get_session_service),
):
    """
    Rotate the refresh token and mint a new access token

    The token comes from the JSON body or, failing that, the refresh cookie.
    Any failure clears both cookies; the client must sign in again.
    """
    client_ip = _client_ip(request)
    rate_limiter.enforce(
        "refresh",
        client_ip,
        (
            RateLimit(settings.RATE_LIMIT_PER_MINUTE, 60),
            RateLimit(settings.RATE_LIMIT_PER_HOUR, 3600),
        ),
        "Too many refresh attempts. Slow down.",
    )

    presented = body.refresh_token if body and body.refresh_token else None
    if presented is None:
        cookie_value = request.cookies.get(settings.REFRESH_TOKEN_COOKIE)
        if cookie_value:
            try:
                presented = RefreshTokenRequest(refresh_token=cookie_value).refresh_token
            except PydanticValidationError:
                presented = None
                logger.info("Rejected malformed refresh cookie from %s", client_ip)

    result = sessions.refresh(db, presented or "", ip_address=client_ip)
    if isinstance(result, Err):
        failed = error_response(request, AuthenticationError.from_failure(result.kind))
        clear_session_cookies(failed)
        return failed

    refreshed = result.value
    set_session_cookies(response, refreshed.tokens)
    return token_response(refreshed.tokens, refreshed.user)


async def _logout_body_token(request: Request) -> Optional[str]:
    """Read the logout body leniently; anything unusable counts as no token."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return LogoutRequest.model_validate_json(raw).refresh_token
    except PydanticValidationError:
        logger.info("Ignoring unusable logout body from %s", _client_ip(request))
        return None


@router.post("/logout", response_model=SuccessResponse, status_code=status.HTTP_200_OK)
def logout(
    request: Request,
    body_token: Optional[str] = Depends(_logout_body_token),
    db: Session = Depends(get_db),
    sessions: SessionService = Depends(get_session_service),
):
    """
    Logout endpoint - invalidate the refresh token and clear both cookies

    Best-effort unless LOGOUT_REQUIRE_INVALIDATION is set: cookies are
    cleared and success reported even when the invalidation write fails.
    """
    presented = body_token or request.cookies.get(settings.REFRESH_TOKEN_COOKIE)

    try:
        revoked = sessions.revoke(db, presented)
    except SQLAlchemyError as exc:
        logger.error("Refresh token invalidation failed during logout: %s", exc.__class__.__name__)
        if settings.LOGOUT_REQUIRE_INVALIDATION:
            failed = error_response(request, DatabaseError("Logout failed"))
            clear_session_cookies(failed)
            return failed
        revoked = False

    if revoked:
        audit_service.log_event(
            db,
            user_id=None,
            action="logout",
            target_type=AuditTarget.REFRESH_TOKEN,
            ip_address=_client_ip(request),
        )

    response = JSONResponse({"success": True})
    clear_session_cookies(response)
    return response


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """
    Get current user information

    Args:
        current_user: Current authenticated user

    Returns:
        User information
    """
    return UserResponse.model_validate(current_user)


@router.get("/connections", response_model=UserConnectionsResponse)
def list_connections(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List the caller's linked identities alongside every configured provider"""
    connections = (
        db.query(OAuthConnection)
        .filter(OAuthConnection.user_id == current_user.id)
        .order_by(OAuthConnection.created_at.desc(), OAuthConnection.id.desc())
        .all()
    )
    providers = oauth_provider_service.list_providers(db)
    return UserConnectionsResponse(
        connections=[ConnectionResponse.model_validate(c) for c in connections],
        all_providers=[OAuthProviderSummary.model_validate(p) for p in providers],
    )
