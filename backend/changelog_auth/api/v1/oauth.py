"""OAuth login routes - provider list, authorize and callback"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from typing import List, Optional
from urllib.parse import urlencode
import logging

from changelog_auth.config import settings
from changelog_auth.core.database import get_db
from changelog_auth.core.exceptions import OAuthFlowError
from changelog_auth.core.result import Err
from changelog_auth.schemas.oauth import AuthorizationResponse, OAuthCallbackParams, OAuthProviderSummary
from changelog_auth.api.deps import get_session_service
from changelog_auth.api.responses import set_session_cookies
from changelog_auth.models.audit import AuditTarget
from changelog_auth.services.audit_service import audit_service
from changelog_auth.services.oauth_linker import OAuthLinker, oauth_linker
from changelog_auth.services.oauth_providers import oauth_provider_service
from changelog_auth.services.session_service import SessionService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_oauth_linker() -> OAuthLinker:
    return oauth_linker


def _login_error_redirect(error: str, description: Optional[str] = None) -> RedirectResponse:
    params = {"error": error}
    if description:
        params["error_description"] = description
    return RedirectResponse(
        url=f"{settings.APP_URL.rstrip('/')}/login?{urlencode(params)}",
        status_code=302,
    )


@router.get("/providers", response_model=List[OAuthProviderSummary])
def list_enabled_providers(db: Session = Depends(get_db)):
    """List providers offered on the login page"""
    providers = oauth_provider_service.list_providers(db, enabled_only=True)
    return [OAuthProviderSummary.model_validate(p) for p in providers]


@router.get("/authorize/{provider}", response_model=AuthorizationResponse)
def authorize(
    provider: str,
    redirect: Optional[str] = Query(default=None, max_length=2048),
    mode: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    linker: OAuthLinker = Depends(get_oauth_linker),
):
    """
    Start an OAuth login

    Args:
        provider: Provider id or name
        redirect: Relative path to land on after login
        mode: ``redirect`` answers with a 302 instead of JSON

    Returns:
        Authorization URL and state
    """
    result = linker.initiate(db, provider, redirect)
    if isinstance(result, Err):
        raise OAuthFlowError(result.kind, result.message)

    authorization = result.value
    if mode == "redirect":
        return RedirectResponse(url=authorization.url, status_code=302)
    return AuthorizationResponse(
        authorization_url=authorization.url,
        state=authorization.state,
        provider_id=authorization.provider_id,
    )


@router.get("/callback/{provider}")
def callback(
    provider: str,
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(get_db),
    linker: OAuthLinker = Depends(get_oauth_linker),
    sessions: SessionService = Depends(get_session_service),
):
    """
    Provider redirect target: link the identity, start a session, redirect

    Every failure lands on the login page with an ``error`` query parameter.
    """
    if error:
        logger.info(f"OAuth provider {provider} returned error: {error}")
        return _login_error_redirect(error, error_description)

    try:
        params = OAuthCallbackParams(code=code or "", state=state or "")
    except PydanticValidationError:
        return _login_error_redirect("malformed")

    result = linker.handle_callback(db, provider, params.code, params.state)
    if isinstance(result, Err):
        return _login_error_redirect(result.kind.value)

    linked = result.value
    pair = sessions.issue(db, linked.user)
    audit_service.log_event(
        db,
        user_id=linked.user.id,
        action="oauth_user_created" if linked.created_user else "oauth_linked",
        target_type=AuditTarget.OAUTH_CONNECTION,
        target_id=str(linked.connection_id),
        ip_address=request.client.host if request.client else None,
        metadata={"provider": provider, "new_connection": linked.created_connection},
    )

    response = RedirectResponse(url=f"{settings.APP_URL.rstrip('/')}{linked.redirect_to}", status_code=302)
    set_session_cookies(response, pair)
    return response
