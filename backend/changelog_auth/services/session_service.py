"""Session lifecycle: issue, verify, rotate and revoke."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from changelog_auth.config import settings
from changelog_auth.core.metrics import record_session_event
from changelog_auth.core.result import AuthFailure, Err, Ok, RefreshFailure, Result
from changelog_auth.core.security import (
    Clock,
    TokenCodec,
    generate_refresh_token,
    hash_token,
    utc_now,
)
from changelog_auth.models.audit import AuditTarget
from changelog_auth.models.user import User
from changelog_auth.services.audit_service import audit_service
from changelog_auth.services.refresh_store import RefreshStore, refresh_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    user_id: int


@dataclass(frozen=True)
class RefreshedSession:
    user: User
    tokens: TokenPair


class SessionService:
    """
    Orchestrates access tokens (TokenCodec) and refresh records (RefreshStore).

    A session is Active after ``issue``; each ``refresh`` retires the
    presented refresh token and hands out a successor; ``revoke`` ends it.
    Sessions that are never refreshed simply expire.
    """

    def __init__(
        self,
        codec: TokenCodec,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        token_bytes: int = 48,
        clock: Clock = utc_now,
        store: Optional[RefreshStore] = None,
    ) -> None:
        self.codec = codec
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.token_bytes = token_bytes
        self._clock = clock
        self._store = store or refresh_store

    def _mint_pair(self, user_id: int, raw_refresh: str, refresh_expires_at: datetime) -> TokenPair:
        access = self.codec.issue(user_id, self.access_ttl)
        return TokenPair(
            access_token=access.token,
            refresh_token=raw_refresh,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh_expires_at,
            user_id=user_id,
        )

    def issue(self, db: Session, user: User) -> TokenPair:
        """
        Start a session for a user

        Args:
            db: Database session
            user: Authenticated user

        Returns:
            TokenPair: new access token and refresh token
        """
        now = self._clock()
        raw_refresh = generate_refresh_token(self.token_bytes)
        expires_at = now + self.refresh_ttl
        record = self._store.create(
            db,
            user_id=user.id,
            token_hash=hash_token(raw_refresh),
            expires_at=expires_at,
        )
        db.commit()
        record_session_event("issue", "ok")
        logger.info("Issued session for user_id=%s refresh_id=%s", user.id, record.id)
        return self._mint_pair(user.id, raw_refresh, expires_at)

    def refresh(
        self,
        db: Session,
        presented: str,
        *,
        ip_address: Optional[str] = None,
    ) -> Result[RefreshedSession, RefreshFailure]:
        """
        Rotate a refresh token

        Args:
            db: Database session
            presented: Raw refresh token from the client
            ip_address: Caller address, recorded on reuse

        Returns:
            Ok(RefreshedSession) or Err(MALFORMED | NOT_FOUND | INVALIDATED | EXPIRED)
        """
        if not presented:
            record_session_event("refresh", RefreshFailure.MALFORMED.value)
            return Err(RefreshFailure.MALFORMED, "Missing refresh token")

        now = self._clock()
        record = self._store.find_by_hash(db, hash_token(presented))
        checked = self._store.check_usable(record, now)
        if isinstance(checked, Ok):
            user_id = record.user_id
            raw_refresh = generate_refresh_token(self.token_bytes)
            expires_at = now + self.refresh_ttl
            checked = self._store.rotate(
                db,
                record,
                new_token_hash=hash_token(raw_refresh),
                expires_at=expires_at,
                now=now,
            )

        if isinstance(checked, Err):
            record_session_event("refresh", checked.kind.value)
            if checked.kind is RefreshFailure.INVALIDATED:
                self._report_reuse(db, record, ip_address)
            return checked

        user = db.get(User, user_id)
        logger.info("Rotated refresh token for user_id=%s new_refresh_id=%s", user_id, checked.value.id)
        record_session_event("refresh", "ok")
        return Ok(RefreshedSession(user=user, tokens=self._mint_pair(user_id, raw_refresh, expires_at)))

    def _report_reuse(self, db: Session, record, ip_address: Optional[str]) -> None:
        # Replay of a rotated or logged-out token: possible theft.
        record_id = record.id
        user_id = record.user_id
        logger.warning(
            "Refresh token reuse detected: refresh_id=%s user_id=%s ip=%s",
            record_id,
            user_id,
            ip_address,
        )
        audit_service.log_event(
            db,
            user_id=user_id,
            action="refresh_token_reuse",
            target_type=AuditTarget.REFRESH_TOKEN,
            target_id=str(record_id),
            ip_address=ip_address,
        )

    def revoke(self, db: Session, presented: Optional[str]) -> bool:
        """
        Invalidate the record behind a refresh token

        Idempotent: unknown or already-invalid tokens are a no-op.

        Returns:
            True if this call invalidated a record
        """
        if not presented:
            return False
        record = self._store.find_by_hash(db, hash_token(presented))
        if record is None:
            record_session_event("revoke", "not_found")
            return False
        changed = self._store.invalidate(db, record.id, self._clock())
        record_session_event("revoke", "ok" if changed else "noop")
        if changed:
            logger.info("Revoked refresh_id=%s", record.id)
        return changed

    def validate_request(self, db: Session, access_token: Optional[str]) -> Result[User, AuthFailure]:
        """
        Resolve the user behind an access token

        Returns:
            Ok(User) or Err(MALFORMED | SIGNATURE_INVALID | EXPIRED | USER_NOT_FOUND)
        """
        verified = self.codec.verify(access_token or "")
        if isinstance(verified, Err):
            return Err(AuthFailure.from_verification(verified.kind), verified.message)

        try:
            user_id = int(verified.value)
        except ValueError:
            return Err(AuthFailure.MALFORMED, "Subject is not a user id")

        user = db.get(User, user_id)
        if user is None:
            # Deleted after the token was issued; bounded by the access TTL.
            return Err(AuthFailure.USER_NOT_FOUND, "User not found")
        return Ok(user)


def build_session_service() -> SessionService:
    """Compose the service from application settings."""
    codec = TokenCodec(settings.SECRET_KEY, settings.ALGORITHM)
    return SessionService(
        codec,
        access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        token_bytes=settings.REFRESH_TOKEN_BYTES,
    )


session_service = build_session_service()
