"""Admin routes - OAuth provider administration"""

from fastapi import APIRouter, Depends, status, Request
from sqlalchemy.orm import Session
from typing import List

from changelog_auth.core.database import get_db
from changelog_auth.schemas.oauth import (
    OAuthProviderCreate,
    OAuthProviderPreset,
    OAuthProviderResponse,
    OAuthProviderUpdate,
)
from changelog_auth.services.oauth_providers import oauth_provider_service
from changelog_auth.services.audit_service import audit_service
from changelog_auth.api.deps import get_current_admin_user
from changelog_auth.models.audit import AuditTarget
from changelog_auth.models.user import User

router = APIRouter()


def _client_ip(request: Request):
    return request.client.host if request.client else None


@router.get("/oauth/providers", response_model=List[OAuthProviderResponse])
def list_providers(
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    List every configured OAuth provider, enabled or not

    Args:
        current_user: Current admin user
        db: Database session

    Returns:
        Providers ordered by name (client secrets omitted)
    """
    return oauth_provider_service.list_providers(db)


@router.post("/oauth/providers", response_model=OAuthProviderResponse, status_code=status.HTTP_201_CREATED)
def create_provider(
    data: OAuthProviderCreate,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Register a new OAuth provider

    Args:
        data: Provider configuration
        current_user: Current admin user
        db: Database session

    Returns:
        Created provider
    """
    provider = oauth_provider_service.create_provider(db, data)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="create_oauth_provider",
        target_type=AuditTarget.OAUTH_PROVIDER,
        target_id=str(provider.id),
        ip_address=_client_ip(request),
        metadata={"name": provider.name, "is_default": provider.is_default},
    )
    return provider


@router.get("/oauth/providers/{provider_id}", response_model=OAuthProviderResponse)
def get_provider(
    provider_id: int,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Get one provider by id"""
    return oauth_provider_service.get_provider(db, provider_id)


@router.put("/oauth/providers/{provider_id}", response_model=OAuthProviderResponse)
def update_provider(
    provider_id: int,
    data: OAuthProviderUpdate,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Update provider settings; omitted fields keep their values

    Args:
        provider_id: Provider ID
        data: Fields to change
        current_user: Current admin user
        db: Database session

    Returns:
        Updated provider
    """
    provider = oauth_provider_service.update_provider(db, provider_id, data)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="update_oauth_provider",
        target_type=AuditTarget.OAUTH_PROVIDER,
        target_id=str(provider.id),
        ip_address=_client_ip(request),
        metadata={"fields": sorted(data.model_dump(exclude_unset=True, exclude={"client_secret"}))},
    )
    return provider


@router.delete("/oauth/providers/{provider_id}", status_code=status.HTTP_200_OK)
def delete_provider(
    provider_id: int,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Delete a provider together with every connection made through it

    Returns:
        Success message
    """
    oauth_provider_service.delete_provider(db, provider_id)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="delete_oauth_provider",
        target_type=AuditTarget.OAUTH_PROVIDER,
        target_id=str(provider_id),
        ip_address=_client_ip(request),
    )
    return {
        "success": True,
        "message": f"Provider {provider_id} deleted"
    }


@router.post("/oauth/providers/presets/{preset}", response_model=OAuthProviderResponse)
def setup_preset(
    preset: str,
    data: OAuthProviderPreset,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Create or refresh a well-known provider (pocketid, easypanel)

    Args:
        preset: Preset key
        data: Base URL and client credentials

    Returns:
        The provider row
    """
    provider = oauth_provider_service.setup_preset(db, preset, data)
    audit_service.log_event(
        db,
        user_id=current_user.id,
        action="setup_oauth_preset",
        target_type=AuditTarget.OAUTH_PROVIDER,
        target_id=str(provider.id),
        ip_address=_client_ip(request),
        metadata={"preset": preset.lower(), "base_url": str(data.base_url)},
    )
    return provider
