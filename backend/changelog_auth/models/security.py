"""Security-related persistence models."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from changelog_auth.core.database import Base


class RefreshToken(Base):
    """Refresh token record for rotation/revocation."""

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    invalidated = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    invalidated_at = Column(DateTime(timezone=True), nullable=True)
    # Predecessor in the rotation lineage
    rotated_from_id = Column(Integer, ForeignKey("refresh_tokens.id", ondelete="SET NULL"), nullable=True)

    user = relationship("User", back_populates="refresh_tokens")
    rotated_from = relationship("RefreshToken", remote_side=[id])

    __table_args__ = (
        Index("idx_refresh_tokens_user_active", "user_id", "invalidated"),
    )

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, invalidated={self.invalidated})>"
