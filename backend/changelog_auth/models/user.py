"""User model"""

from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship, validates
from changelog_auth.core.database import Base


class User(Base):
    """Identity record; root of refresh tokens and OAuth connections"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    # NULL for accounts created through an OAuth callback
    password_hash = Column(String(255), nullable=True)
    role = Column(String(20), default="VIEWER", nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login_at = Column(DateTime(timezone=True))

    # Relationships
    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")
    oauth_connections = relationship("OAuthConnection", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_users_role', 'role'),
    )

    @validates("email")
    def _normalize_email(self, key, value):
        return value.strip().lower() if value else value

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
