"""OAuth provider configuration management"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from changelog_auth.config import settings
from changelog_auth.core.exceptions import ResourceAlreadyExistsError, ResourceNotFoundError, ValidationError
from changelog_auth.models.oauth import OAuthProvider
from changelog_auth.schemas.oauth import OAuthProviderCreate, OAuthProviderPreset, OAuthProviderUpdate

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["openid", "profile", "email"]


@dataclass(frozen=True)
class ProviderPreset:
    name: str
    authorization_path: str
    token_path: str
    userinfo_path: str


PRESETS: Dict[str, ProviderPreset] = {
    "pocketid": ProviderPreset("PocketID", "/authorize", "/api/oidc/token", "/api/oidc/userinfo"),
    "easypanel": ProviderPreset("Easypanel", "/oauth/authorize", "/oauth/token", "/oauth/userinfo"),
}


def default_callback_url(provider_name: str) -> str:
    url_name = provider_name.strip().lower().replace(" ", "-")
    return f"{settings.APP_URL.rstrip('/')}/api/v1/auth/oauth/callback/{url_name}"


class OAuthProviderService:
    """CRUD for providers; keeps at most one provider marked default."""

    @staticmethod
    def list_providers(db: Session, enabled_only: bool = False) -> List[OAuthProvider]:
        query = db.query(OAuthProvider)
        if enabled_only:
            query = query.filter(OAuthProvider.enabled == True)  # noqa: E712
        return query.order_by(OAuthProvider.name.asc()).all()

    @staticmethod
    def get_provider(db: Session, provider_id: int) -> OAuthProvider:
        provider = db.get(OAuthProvider, provider_id)
        if not provider:
            raise ResourceNotFoundError("OAuth provider")
        return provider

    @staticmethod
    def find_provider(db: Session, key) -> Optional[OAuthProvider]:
        """Look a provider up by id, name (case-insensitive) or url name."""
        key = str(key).strip()
        if not key:
            return None
        if key.isdigit():
            provider = db.get(OAuthProvider, int(key))
            if provider:
                return provider
        lowered = key.lower()
        return (
            db.query(OAuthProvider)
            .filter(
                or_(
                    func.lower(OAuthProvider.name) == lowered,
                    func.replace(func.lower(OAuthProvider.name), " ", "-") == lowered,
                )
            )
            .first()
        )

    @staticmethod
    def _ensure_unique_name(db: Session, name: str, exclude_id: Optional[int] = None) -> None:
        query = db.query(OAuthProvider).filter(func.lower(OAuthProvider.name) == name.lower())
        if exclude_id is not None:
            query = query.filter(OAuthProvider.id != exclude_id)
        if query.first():
            raise ResourceAlreadyExistsError("OAuth provider")

    @staticmethod
    def _clear_default(db: Session, keep_id: Optional[int]) -> None:
        query = db.query(OAuthProvider).filter(OAuthProvider.is_default == True)  # noqa: E712
        if keep_id is not None:
            query = query.filter(OAuthProvider.id != keep_id)
        for other in query.all():
            other.is_default = False

    @staticmethod
    def create_provider(db: Session, data: OAuthProviderCreate) -> OAuthProvider:
        OAuthProviderService._ensure_unique_name(db, data.name)
        provider = OAuthProvider(
            name=data.name,
            client_id=data.client_id,
            client_secret=data.client_secret,
            authorization_url=str(data.authorization_url),
            token_url=str(data.token_url),
            userinfo_url=str(data.userinfo_url),
            callback_url=str(data.callback_url) if data.callback_url else default_callback_url(data.name),
            scopes=list(data.scopes),
            enabled=data.enabled,
            is_default=data.is_default,
        )
        db.add(provider)
        db.flush()
        if provider.is_default:
            OAuthProviderService._clear_default(db, provider.id)
        db.commit()
        db.refresh(provider)
        logger.info(f"Created OAuth provider {provider.id} ({provider.name})")
        return provider

    @staticmethod
    def update_provider(db: Session, provider_id: int, data: OAuthProviderUpdate) -> OAuthProvider:
        provider = OAuthProviderService.get_provider(db, provider_id)
        changes = data.model_dump(exclude_unset=True)
        if "name" in changes:
            if not changes["name"] or not changes["name"].strip():
                raise ValidationError("Provider name must not be blank")
            changes["name"] = changes["name"].strip()
            OAuthProviderService._ensure_unique_name(db, changes["name"], exclude_id=provider.id)
        for field in ("authorization_url", "token_url", "userinfo_url", "callback_url"):
            if changes.get(field) is not None:
                changes[field] = str(changes[field])
        for field, value in changes.items():
            if value is None:
                continue
            setattr(provider, field, value)
        if changes.get("is_default"):
            OAuthProviderService._clear_default(db, provider.id)
        db.commit()
        db.refresh(provider)
        logger.info(f"Updated OAuth provider {provider.id} fields={sorted(changes)}")
        return provider

    @staticmethod
    def delete_provider(db: Session, provider_id: int) -> None:
        provider = OAuthProviderService.get_provider(db, provider_id)
        db.delete(provider)
        db.commit()
        logger.info(f"Deleted OAuth provider {provider_id}")

    @staticmethod
    def setup_preset(db: Session, preset_key: str, data: OAuthProviderPreset) -> OAuthProvider:
        """Create or refresh a well-known provider from its base URL."""
        preset = PRESETS.get(preset_key.lower())
        if preset is None:
            raise ResourceNotFoundError("OAuth provider preset")

        base_url = str(data.base_url).rstrip("/")
        urls = {
            "authorization_url": f"{base_url}{preset.authorization_path}",
            "token_url": f"{base_url}{preset.token_path}",
            "userinfo_url": f"{base_url}{preset.userinfo_path}",
        }
        existing = OAuthProviderService.find_provider(db, preset.name)
        if existing:
            existing.client_id = data.client_id
            existing.client_secret = data.client_secret
            existing.callback_url = default_callback_url(preset.name)
            existing.enabled = True
            for field, value in urls.items():
                setattr(existing, field, value)
            db.commit()
            db.refresh(existing)
            logger.info(f"Updated {preset.name} provider {existing.id} from preset")
            return existing

        return OAuthProviderService.create_provider(
            db,
            OAuthProviderCreate(
                name=preset.name,
                client_id=data.client_id,
                client_secret=data.client_secret,
                scopes=list(DEFAULT_SCOPES),
                enabled=True,
                is_default=True,
                **urls,
            ),
        )


oauth_provider_service = OAuthProviderService()
