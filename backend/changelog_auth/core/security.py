"""Security utilities - access-token codec, password hashing, opaque tokens"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
import hashlib
import secrets

import bcrypt
from jose import JWTError, jwt

from changelog_auth.core.result import Err, Ok, Result, VerificationFailure

Clock = Callable[[], datetime]

ACCESS_TOKEN_TYPE = "access"

# Used to burn comparable time when the account does not exist.
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"timing-equalizer", bcrypt.gensalt()).decode("utf-8")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    return bcrypt.checkpw(
        plain_password.encode('utf-8'),
        hashed_password.encode('utf-8')
    )


def burn_password_check(plain_password: str) -> None:
    """Run a bcrypt comparison whose result is discarded."""
    verify_password(plain_password, _DUMMY_PASSWORD_HASH)


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def generate_refresh_token(num_bytes: int) -> str:
    """Opaque, url-safe refresh token. Only its digest is ever stored."""
    return secrets.token_urlsafe(num_bytes)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest used as the lookup identifier of an opaque token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_state_token() -> str:
    """Anti-CSRF state for OAuth redirects."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class AccessToken:
    token: str
    subject: str
    issued_at: datetime
    expires_at: datetime


class TokenCodec:
    """
    Signs and verifies short-lived access tokens.

    Verification is signature + expiry only; there is no storage lookup,
    so revocation latency is bounded by the access-token TTL.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", clock: Clock = utc_now) -> None:
        if not secret_key:
            raise ValueError("TokenCodec requires a signing key")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, user_id, ttl: timedelta) -> AccessToken:
        """
        Create a signed access token for a user

        Args:
            user_id: Subject of the token
            ttl: Lifetime of the token

        Returns:
            AccessToken: Encoded token plus its claims
        """
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + ttl
        claims = {
            "sub": str(user_id),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "typ": ACCESS_TOKEN_TYPE,
        }
        token = jwt.encode(claims, self._secret_key, algorithm=self._algorithm)
        return AccessToken(token=token, subject=str(user_id), issued_at=issued_at, expires_at=expires_at)

    def verify(self, token: str) -> Result[str, VerificationFailure]:
        """
        Verify an access token and return its subject

        Args:
            token: Encoded access token

        Returns:
            Ok(user id) or Err(MALFORMED | SIGNATURE_INVALID | EXPIRED)
        """
        if not token or not isinstance(token, str):
            return Err(VerificationFailure.MALFORMED, "Empty token")

        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            return Err(VerificationFailure.MALFORMED, "Token cannot be decoded")

        try:
            # Expiry is checked against the injected clock below.
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError:
            return Err(VerificationFailure.SIGNATURE_INVALID, "Signature verification failed")

        subject = claims.get("sub")
        expires = claims.get("exp")
        if claims.get("typ") != ACCESS_TOKEN_TYPE or not isinstance(subject, str) or not subject:
            return Err(VerificationFailure.MALFORMED, "Missing or invalid claims")
        if not isinstance(expires, (int, float)):
            return Err(VerificationFailure.MALFORMED, "Missing expiry claim")

        if self._clock().timestamp() >= expires:
            return Err(VerificationFailure.EXPIRED, "Token has expired")

        return Ok(subject)
