"""Audit trail for security-sensitive session events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from changelog_auth.models.audit import AuditEvent, AuditTarget

logger = logging.getLogger(__name__)


class AuditService:
    """Persist immutable audit trail entries."""

    @staticmethod
    def log_event(
        db: Session,
        *,
        user_id: Optional[int],
        action: str,
        target_type: Optional[AuditTarget] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """
        Write one audit event in its own commit

        A failed audit write is logged and rolled back; it never fails the
        session operation that triggered it. An unknown target type is a
        programming error and raises ValueError before anything is written.
        """
        event = AuditEvent(
            user_id=user_id,
            action=action,
            target_type=AuditTarget(target_type).value if target_type is not None else None,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        try:
            db.add(event)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to write audit event %s: %s", action, exc)
            return None
        return event


audit_service = AuditService()
