"""Database models"""

from changelog_auth.models.user import User
from changelog_auth.models.security import RefreshToken
from changelog_auth.models.oauth import OAuthProvider, OAuthConnection
from changelog_auth.models.audit import AuditEvent

__all__ = ["User", "RefreshToken", "OAuthProvider", "OAuthConnection", "AuditEvent"]
