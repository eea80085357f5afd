"""OAuth provider configuration and linked identities."""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, JSON, UniqueConstraint, Index,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from changelog_auth.core.database import Base


class OAuthProvider(Base):
    """Authorization-code provider; at most one row has is_default set."""

    __tablename__ = "oauth_providers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    client_id = Column(String(255), nullable=False)
    client_secret = Column(String(255), nullable=False)
    authorization_url = Column(String(500), nullable=False)
    token_url = Column(String(500), nullable=False)
    userinfo_url = Column(String(500), nullable=False)
    callback_url = Column(String(500), nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    connections = relationship("OAuthConnection", back_populates="provider", cascade="all, delete-orphan")

    @property
    def url_name(self) -> str:
        return self.name.strip().lower().replace(" ", "-")

    def __repr__(self):
        return f"<OAuthProvider(id={self.id}, name='{self.name}', enabled={self.enabled})>"


class OAuthConnection(Base):
    """Durable link between a local user and one remote identity."""

    __tablename__ = "oauth_connections"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("oauth_providers.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider_user_id = Column(String(255), nullable=False)
    # Opaque credentials issued by the remote provider
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    provider = relationship("OAuthProvider", back_populates="connections")
    user = relationship("User", back_populates="oauth_connections")

    __table_args__ = (
        UniqueConstraint("provider_id", "provider_user_id", name="uq_oauth_connections_provider_identity"),
        UniqueConstraint("provider_id", "user_id", name="uq_oauth_connections_provider_user"),
        Index("idx_oauth_connections_user", "user_id"),
    )
