"""Explicit success/failure variants returned by the session core.

Token verification, refresh rotation and OAuth linking report expected
failures as values instead of raising, so every caller has to branch on
the failure kind. HTTP handlers convert an ``Err`` into an API exception
at the edge (see ``changelog_auth.core.exceptions``).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    kind: E
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


class VerificationFailure(str, Enum):
    """Why an access token was rejected."""

    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"


class RefreshFailure(str, Enum):
    """Why a refresh token could not be rotated."""

    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    INVALIDATED = "invalidated"
    EXPIRED = "expired"


class AuthFailure(str, Enum):
    """Why a request could not be tied to a user."""

    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    USER_NOT_FOUND = "user_not_found"

    @classmethod
    def from_verification(cls, failure: VerificationFailure) -> "AuthFailure":
        return cls(failure.value)


class OAuthFailure(str, Enum):
    """Terminal failures of an OAuth login flow."""

    UNKNOWN_PROVIDER = "unknown_provider"
    PROVIDER_DISABLED = "provider_disabled"
    STATE_MISMATCH = "state_mismatch"
    EXCHANGE_FAILED = "exchange_failed"
    USER_INFO_FAILED = "user_info_failed"
    ACCOUNT_CONFLICT = "account_conflict"
