"""User service - user lookup, creation and password authentication"""

from sqlalchemy.orm import Session
from typing import Optional
import logging

from changelog_auth.core.exceptions import InvalidCredentialsError, ResourceAlreadyExistsError
from changelog_auth.core.security import burn_password_check, get_password_hash, utc_now, verify_password
from changelog_auth.models.user import User
from changelog_auth.schemas.user import UserRole

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserService:
    """Service for user management"""

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.get(User, user_id)

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by case-normalized email"""
        return db.query(User).filter(User.email == normalize_email(email)).first()

    @staticmethod
    def build_user(
        email: str,
        *,
        name: Optional[str] = None,
        password: Optional[str] = None,
        role: UserRole = UserRole.VIEWER,
    ) -> User:
        """Construct an unsaved user; OAuth-only accounts carry no password."""
        return User(
            email=normalize_email(email),
            name=name,
            password_hash=get_password_hash(password) if password else None,
            role=role.value,
        )

    @staticmethod
    def create_user(
        db: Session,
        email: str,
        *,
        name: Optional[str] = None,
        password: Optional[str] = None,
        role: UserRole = UserRole.VIEWER,
    ) -> User:
        """
        Create new user

        Args:
            db: Database session
            email: Unique email (case-insensitive)
            name: Display name
            password: Optional password
            role: User role

        Returns:
            Created user
        """
        if UserService.get_user_by_email(db, email):
            raise ResourceAlreadyExistsError("User")

        user = UserService.build_user(email, name=name, password=password, role=role)
        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"Created user: {user.id} (role: {user.role})")
        return user

    @staticmethod
    def authenticate_user(db: Session, email: str, password: str) -> User:
        """
        Authenticate user with email and password

        Args:
            db: Database session
            email: Email
            password: Password

        Returns:
            Authenticated user
        """
        user = UserService.get_user_by_email(db, email)

        if not user or not user.password_hash:
            burn_password_check(password)
            raise InvalidCredentialsError()

        if not verify_password(password, user.password_hash):
            logger.info(f"Failed password login for user {user.id}")
            raise InvalidCredentialsError()

        user.last_login_at = utc_now()
        db.commit()

        logger.info(f"User authenticated: {user.id}")
        return user


# Singleton instance
user_service = UserService()
