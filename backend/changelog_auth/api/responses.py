"""Shared response builders: error envelope and session cookies."""

from datetime import datetime, timezone

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from changelog_auth.config import settings
from changelog_auth.core.exceptions import BaseAPIException, RateLimitExceededError
from changelog_auth.models.user import User
from changelog_auth.schemas.user import TokenResponse, UserResponse
from changelog_auth.services.session_service import TokenPair


def error_response(request: Request, exc: BaseAPIException) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitExceededError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        headers=headers,
        content={
            "success": False,
            "error": exc.message,
            "code": exc.code,
            "details": exc.details,
            "path": request.url.path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def set_session_cookies(response: Response, pair: TokenPair) -> None:
    common = {
        "httponly": True,
        "secure": settings.cookies_secure(),
        "samesite": settings.COOKIE_SAMESITE,
        "path": "/",
    }
    response.set_cookie(
        settings.ACCESS_TOKEN_COOKIE,
        pair.access_token,
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        **common,
    )
    response.set_cookie(
        settings.REFRESH_TOKEN_COOKIE,
        pair.refresh_token,
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        **common,
    )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(settings.ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(settings.REFRESH_TOKEN_COOKIE, path="/")


def token_response(pair: TokenPair, user: User) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )
