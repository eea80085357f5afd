"""Custom exception classes for the application"""

from typing import Optional, Dict, Any

from changelog_auth.core.result import AuthFailure, OAuthFailure, RefreshFailure


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.code = code
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", code: Optional[str] = None):
        super().__init__(message, status_code=401, code=code)

    @classmethod
    def from_failure(cls, failure) -> "AuthenticationError":
        """Build the 401 for an AuthFailure or RefreshFailure kind."""
        # str enums with equal values collide as dict keys, so each kind has its own table
        messages = _REFRESH_FAILURE_MESSAGES if isinstance(failure, RefreshFailure) else _AUTH_FAILURE_MESSAGES
        return cls(messages.get(failure, "Authentication failed"), code=failure.value)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    def __init__(self):
        super().__init__("Invalid credentials", code="invalid_credentials")


class SessionExpiredError(AuthenticationError):
    """The session cannot be recovered; the user must sign in again"""
    def __init__(self, message: str = "Session expired"):
        super().__init__(message, code="session_expired")


_AUTH_FAILURE_MESSAGES = {
    AuthFailure.MALFORMED: "Malformed access token",
    AuthFailure.SIGNATURE_INVALID: "Invalid access token",
    AuthFailure.EXPIRED: "Access token has expired",
    AuthFailure.USER_NOT_FOUND: "User not found",
}

_REFRESH_FAILURE_MESSAGES = {
    RefreshFailure.MALFORMED: "Malformed refresh token",
    RefreshFailure.NOT_FOUND: "Refresh token not recognized",
    RefreshFailure.INVALIDATED: "Refresh token has been invalidated",
    RefreshFailure.EXPIRED: "Refresh token has expired",
}


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403, code="forbidden")


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404, code="not_found")


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409, code="conflict")


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details, code="malformed")


# OAuth Errors
_OAUTH_STATUS = {
    OAuthFailure.UNKNOWN_PROVIDER: 404,
    OAuthFailure.PROVIDER_DISABLED: 403,
    OAuthFailure.STATE_MISMATCH: 400,
    OAuthFailure.EXCHANGE_FAILED: 502,
    OAuthFailure.USER_INFO_FAILED: 502,
    OAuthFailure.ACCOUNT_CONFLICT: 409,
}


class OAuthFlowError(BaseAPIException):
    """OAuth login flow failed; the flow must be restarted"""
    def __init__(self, failure: OAuthFailure, message: str = ""):
        self.failure = failure
        super().__init__(
            message or failure.value.replace("_", " ").capitalize(),
            status_code=_OAUTH_STATUS.get(failure, 400),
            code=failure.value,
        )


# System Errors
class DatabaseError(BaseAPIException):
    """Database operation failed"""
    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, status_code=500, code="database_error")


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after: int = 0):
        self.retry_after = retry_after
        details = {"retry_after": retry_after} if retry_after else None
        super().__init__(message, status_code=429, details=details, code="rate_limited")
