"""Refresh-token persistence with compare-and-swap invalidation."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from changelog_auth.core.result import Err, Ok, RefreshFailure, Result
from changelog_auth.core.security import as_utc
from changelog_auth.models.security import RefreshToken


class RefreshStore:
    """Owns every read and write of refresh_tokens rows."""

    @staticmethod
    def create(
        db: Session,
        *,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        rotated_from_id: Optional[int] = None,
    ) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            invalidated=False,
            rotated_from_id=rotated_from_id,
        )
        db.add(record)
        db.flush()
        return record

    @staticmethod
    def find_by_hash(db: Session, token_hash: str) -> Optional[RefreshToken]:
        return db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()

    @staticmethod
    def check_usable(record: Optional[RefreshToken], now: datetime) -> Result[RefreshToken, RefreshFailure]:
        """Apply the NOT_FOUND -> INVALIDATED -> EXPIRED checks in that order."""
        if record is None:
            return Err(RefreshFailure.NOT_FOUND, "Refresh token not recognized")
        if record.invalidated:
            return Err(RefreshFailure.INVALIDATED, "Refresh token already invalidated")
        if as_utc(record.expires_at) <= now:
            return Err(RefreshFailure.EXPIRED, "Refresh token expired")
        return Ok(record)

    @staticmethod
    def mark_invalidated(db: Session, record_id: int, now: datetime) -> bool:
        """
        Flip invalidated false -> true for one record

        The WHERE clause makes this a compare-and-swap: of any number of
        concurrent callers, exactly one sees a changed row.

        Returns:
            True if this call performed the transition
        """
        result = db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == record_id, RefreshToken.invalidated == False)  # noqa: E712
            .values(invalidated=True, invalidated_at=now)
        )
        return result.rowcount == 1

    @staticmethod
    def rotate(
        db: Session,
        record: RefreshToken,
        *,
        new_token_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> Result[RefreshToken, RefreshFailure]:
        """
        Invalidate ``record`` and create its successor in one transaction

        Returns:
            Ok(successor), or Err(INVALIDATED) when another writer won the race
        """
        user_id = record.user_id
        record_id = record.id
        try:
            if not RefreshStore.mark_invalidated(db, record_id, now):
                db.rollback()
                return Err(RefreshFailure.INVALIDATED, "Refresh token already invalidated")
            successor = RefreshStore.create(
                db,
                user_id=user_id,
                token_hash=new_token_hash,
                expires_at=expires_at,
                rotated_from_id=record_id,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        return Ok(successor)

    @staticmethod
    def invalidate(db: Session, record_id: int, now: datetime) -> bool:
        """Invalidate and commit; False if the record was already invalid."""
        try:
            changed = RefreshStore.mark_invalidated(db, record_id, now)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        return changed

    @staticmethod
    def active_for_user(db: Session, user_id: int, now: datetime) -> List[RefreshToken]:
        records = (
            db.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id, RefreshToken.invalidated == False)  # noqa: E712
            .order_by(RefreshToken.id.asc())
            .all()
        )
        return [r for r in records if as_utc(r.expires_at) > now]


refresh_store = RefreshStore()
