"""Audit trail of session and identity events."""

from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from changelog_auth.core.database import Base


class AuditTarget(str, Enum):
    """What an audit event is about"""
    USER = "user"
    REFRESH_TOKEN = "refresh_token"
    OAUTH_CONNECTION = "oauth_connection"
    OAUTH_PROVIDER = "oauth_provider"


_TARGET_VALUES = ", ".join(f"'{target.value}'" for target in AuditTarget)


class AuditEvent(Base):
    """Append-only record of a login, logout, replay or provider change."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    # Actor; NULL for anonymous requests such as cookie-only logout
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=True)
    target_id = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")

    __table_args__ = (
        CheckConstraint(f"target_type IN ({_TARGET_VALUES})", name="ck_audit_events_target_type"),
        Index("idx_audit_events_created_at", "created_at"),
        Index("idx_audit_events_target", "target_type", "target_id"),
        Index("idx_audit_events_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return f"<AuditEvent(id={self.id}, action='{self.action}', target={self.target_type}:{self.target_id})>"
