"""OAuth authorization-code login and identity linking."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from changelog_auth.config import settings
from changelog_auth.core.metrics import record_session_event
from changelog_auth.core.result import Err, OAuthFailure, Ok, Result
from changelog_auth.core.security import Clock, generate_state_token, utc_now
from changelog_auth.models.oauth import OAuthConnection, OAuthProvider
from changelog_auth.models.user import User
from changelog_auth.schemas.user import UserRole
from changelog_auth.services.oauth_providers import oauth_provider_service
from changelog_auth.services.user_service import user_service

logger = logging.getLogger(__name__)


class FlowStage(str, Enum):
    INITIATED = "initiated"
    REDIRECTED = "redirected"
    CALLBACK_RECEIVED = "callback_received"
    EXCHANGED = "exchanged"
    LINKED = "linked"
    FAILED = "failed"


@dataclass(frozen=True)
class PendingAuthorization:
    provider_id: int
    redirect_to: str
    expires_at: datetime


class OAuthStateStore:
    """
    Single-use anti-CSRF states issued by ``initiate``.

    Process-local, like the rate limiter; multi-node deployments need
    sticky routing for the OAuth round trip.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingAuthorization] = {}

    def issue(self, provider_id: int, redirect_to: str, expires_at: datetime) -> str:
        state = generate_state_token()
        with self._lock:
            self._pending[state] = PendingAuthorization(provider_id, redirect_to, expires_at)
        return state

    def consume(self, state: str, now: datetime) -> Optional[PendingAuthorization]:
        """Pop a state; expired entries are discarded along the way."""
        with self._lock:
            pending = self._pending.pop(state, None)
            stale = [key for key, value in self._pending.items() if value.expires_at <= now]
            for key in stale:
                del self._pending[key]
        if pending is None or pending.expires_at <= now:
            return None
        return pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str
    provider_id: int
    redirect_to: str


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]


@dataclass(frozen=True)
class RemoteIdentity:
    provider_user_id: str
    email: Optional[str]
    name: Optional[str]
    email_verified: bool


@dataclass(frozen=True)
class LinkResult:
    user: User
    connection_id: int
    created_user: bool
    created_connection: bool
    redirect_to: str


def safe_redirect_path(candidate: Optional[str], fallback: str) -> str:
    """Only same-origin absolute paths survive; anything else falls back."""
    if candidate and candidate.startswith("/") and not candidate.startswith("//") and "\\" not in candidate:
        return candidate
    return fallback


class OAuthLinker:
    """
    Drives Initiate -> Redirect -> Callback -> Exchange -> Link.

    Identity resolution order is fixed: existing connection, then a
    permitted email match, then a new user. Any failure leaves the
    database untouched.
    """

    def __init__(
        self,
        state_store: Optional[OAuthStateStore] = None,
        *,
        timeout: float = 10.0,
        state_ttl: timedelta = timedelta(minutes=10),
        link_by_email: bool = True,
        require_verified_email: bool = True,
        default_role: UserRole = UserRole.VIEWER,
        default_redirect: str = "/dashboard",
        clock: Clock = utc_now,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.state_store = state_store or OAuthStateStore()
        self.timeout = timeout
        self.state_ttl = state_ttl
        self.link_by_email = link_by_email
        self.require_verified_email = require_verified_email
        self.default_role = default_role
        self.default_redirect = default_redirect
        self._clock = clock
        self._transport = transport

    def _resolve_provider(self, db: Session, provider_key) -> Result[OAuthProvider, OAuthFailure]:
        provider = oauth_provider_service.find_provider(db, provider_key)
        if provider is None:
            return Err(OAuthFailure.UNKNOWN_PROVIDER, f"Provider not found: {provider_key}")
        if not provider.enabled:
            return Err(OAuthFailure.PROVIDER_DISABLED, f"Provider disabled: {provider.name}")
        return Ok(provider)

    def initiate(
        self,
        db: Session,
        provider_key,
        redirect_to: Optional[str] = None,
    ) -> Result[AuthorizationRequest, OAuthFailure]:
        """
        Build the provider authorization URL and remember its state

        Args:
            db: Database session
            provider_key: Provider id or name
            redirect_to: Relative path to land on after login

        Returns:
            Ok(AuthorizationRequest) or Err(UNKNOWN_PROVIDER | PROVIDER_DISABLED)
        """
        resolved = self._resolve_provider(db, provider_key)
        if isinstance(resolved, Err):
            logger.info("OAuth initiate rejected for %s: %s", provider_key, resolved.kind.value)
            return resolved
        provider = resolved.value

        landing = safe_redirect_path(redirect_to, self.default_redirect)
        state = self.state_store.issue(provider.id, landing, self._clock() + self.state_ttl)
        params = {
            "client_id": provider.client_id,
            "redirect_uri": provider.callback_url,
            "response_type": "code",
            "scope": " ".join(provider.scopes or []),
            "state": state,
        }
        separator = "&" if "?" in provider.authorization_url else "?"
        url = f"{provider.authorization_url}{separator}{urlencode(params)}"
        logger.info("OAuth flow %s for provider %s", FlowStage.REDIRECTED.value, provider.id)
        return Ok(AuthorizationRequest(url=url, state=state, provider_id=provider.id, redirect_to=landing))

    def handle_callback(
        self,
        db: Session,
        provider_key,
        code: str,
        state: str,
    ) -> Result[LinkResult, OAuthFailure]:
        """
        Complete the flow and return the linked local user

        Returns:
            Ok(LinkResult) or Err(STATE_MISMATCH | UNKNOWN_PROVIDER | PROVIDER_DISABLED |
            EXCHANGE_FAILED | USER_INFO_FAILED | ACCOUNT_CONFLICT)
        """
        result = self._complete(db, provider_key, code, state)
        outcome = "ok" if isinstance(result, Ok) else result.kind.value
        record_session_event("oauth_callback", outcome)
        return result

    def _complete(self, db: Session, provider_key, code: str, state: str) -> Result[LinkResult, OAuthFailure]:
        pending = self.state_store.consume(state, self._clock()) if state else None
        if pending is None:
            return self._fail(
                FlowStage.CALLBACK_RECEIVED,
                Err(OAuthFailure.STATE_MISMATCH, "Unknown or expired OAuth state"),
            )

        resolved = self._resolve_provider(db, provider_key)
        if isinstance(resolved, Err):
            return self._fail(FlowStage.CALLBACK_RECEIVED, resolved)
        provider = resolved.value

        if pending.provider_id != provider.id:
            return self._fail(
                FlowStage.CALLBACK_RECEIVED,
                Err(OAuthFailure.STATE_MISMATCH, "OAuth state was issued for another provider"),
            )

        with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=False) as client:
            tokens = self._exchange_code(client, provider, code)
            if isinstance(tokens, Err):
                return self._fail(FlowStage.CALLBACK_RECEIVED, tokens)
            identity = self._fetch_identity(client, provider, tokens.value)
            if isinstance(identity, Err):
                return self._fail(FlowStage.EXCHANGED, identity)

        linked = self._link(db, provider, identity.value, tokens.value, pending.redirect_to)
        if isinstance(linked, Err):
            return self._fail(FlowStage.EXCHANGED, linked)
        logger.info(
            "OAuth flow %s: provider=%s user_id=%s created_user=%s",
            FlowStage.LINKED.value,
            provider.id,
            linked.value.user.id,
            linked.value.created_user,
        )
        return linked

    @staticmethod
    def _fail(stage: FlowStage, err: Err) -> Err:
        level = logging.WARNING if err.kind is OAuthFailure.STATE_MISMATCH else logging.ERROR
        logger.log(level, "OAuth flow %s at %s: %s (%s)", FlowStage.FAILED.value, stage.value, err.kind.value, err.message)
        return err

    def _exchange_code(
        self, client: httpx.Client, provider: OAuthProvider, code: str
    ) -> Result[ProviderTokens, OAuthFailure]:
        try:
            response = client.post(
                provider.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": provider.callback_url,
                    "client_id": provider.client_id,
                    "client_secret": provider.client_secret,
                },
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            return Err(OAuthFailure.EXCHANGE_FAILED, f"Token endpoint returned {exc.response.status_code}")
        except httpx.HTTPError as exc:
            return Err(OAuthFailure.EXCHANGE_FAILED, f"Token endpoint unreachable: {exc.__class__.__name__}")
        except ValueError:
            return Err(OAuthFailure.EXCHANGE_FAILED, "Token endpoint returned invalid JSON")

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            return Err(OAuthFailure.EXCHANGE_FAILED, "Token response has no access_token")

        expires_at = None
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)) or (isinstance(expires_in, str) and expires_in.isdigit()):
            expires_at = self._clock() + timedelta(seconds=int(expires_in))
        return Ok(ProviderTokens(access_token, payload.get("refresh_token"), expires_at))

    def _fetch_identity(
        self, client: httpx.Client, provider: OAuthProvider, tokens: ProviderTokens
    ) -> Result[RemoteIdentity, OAuthFailure]:
        try:
            response = client.get(
                provider.userinfo_url,
                headers={"Authorization": f"Bearer {tokens.access_token}", "Accept": "application/json"},
            )
            response.raise_for_status()
            userinfo = response.json()
        except httpx.HTTPStatusError as exc:
            return Err(OAuthFailure.USER_INFO_FAILED, f"Userinfo endpoint returned {exc.response.status_code}")
        except httpx.HTTPError as exc:
            return Err(OAuthFailure.USER_INFO_FAILED, f"Userinfo endpoint unreachable: {exc.__class__.__name__}")
        except ValueError:
            return Err(OAuthFailure.USER_INFO_FAILED, "Userinfo endpoint returned invalid JSON")

        if not isinstance(userinfo, dict):
            return Err(OAuthFailure.USER_INFO_FAILED, "Userinfo is not an object")
        return self._parse_identity(userinfo)

    @staticmethod
    def _parse_identity(userinfo: Dict[str, Any]) -> Result[RemoteIdentity, OAuthFailure]:
        remote_id = userinfo.get("sub") or userinfo.get("id")
        if remote_id is None or str(remote_id).strip() == "":
            return Err(OAuthFailure.USER_INFO_FAILED, "Userinfo has no subject")
        email = userinfo.get("email")
        verified = userinfo.get("email_verified")
        return Ok(
            RemoteIdentity(
                provider_user_id=str(remote_id),
                email=email.strip().lower() if isinstance(email, str) and email.strip() else None,
                name=userinfo.get("name") or userinfo.get("preferred_username"),
                email_verified=verified is True or (isinstance(verified, str) and verified.lower() == "true"),
            )
        )

    def _may_link_by_email(self, identity: RemoteIdentity) -> bool:
        if not self.link_by_email:
            return False
        return identity.email_verified or not self.require_verified_email

    @staticmethod
    def _find_connection(db: Session, provider_id: int, provider_user_id: str) -> Optional[OAuthConnection]:
        return (
            db.query(OAuthConnection)
            .filter(
                OAuthConnection.provider_id == provider_id,
                OAuthConnection.provider_user_id == provider_user_id,
            )
            .first()
        )

    @staticmethod
    def _store_tokens(connection: OAuthConnection, tokens: ProviderTokens) -> None:
        connection.access_token = tokens.access_token
        if tokens.refresh_token:
            connection.refresh_token = tokens.refresh_token
        connection.expires_at = tokens.expires_at

    def _link(
        self,
        db: Session,
        provider: OAuthProvider,
        identity: RemoteIdentity,
        tokens: ProviderTokens,
        redirect_to: str,
    ) -> Result[LinkResult, OAuthFailure]:
        provider_id = provider.id
        try:
            connection = self._find_connection(db, provider_id, identity.provider_user_id)
            if connection is not None:
                self._store_tokens(connection, tokens)
                db.commit()
                return Ok(LinkResult(connection.user, connection.id, False, False, redirect_to))

            if not identity.email:
                return Err(OAuthFailure.USER_INFO_FAILED, "Provider did not return an email address")

            created_user = False
            user = user_service.get_user_by_email(db, identity.email)
            if user is not None:
                if not self._may_link_by_email(identity):
                    return Err(OAuthFailure.ACCOUNT_CONFLICT, "Email belongs to an account that cannot be linked")
                already_linked = (
                    db.query(OAuthConnection)
                    .filter(OAuthConnection.provider_id == provider_id, OAuthConnection.user_id == user.id)
                    .first()
                )
                if already_linked is not None:
                    return Err(OAuthFailure.ACCOUNT_CONFLICT, "Account already linked to another identity")
            else:
                user = user_service.build_user(identity.email, name=identity.name, role=self.default_role)
                db.add(user)
                db.flush()
                created_user = True

            connection = OAuthConnection(
                provider_id=provider_id,
                user_id=user.id,
                provider_user_id=identity.provider_user_id,
            )
            self._store_tokens(connection, tokens)
            db.add(connection)
            db.commit()
            return Ok(LinkResult(user, connection.id, created_user, True, redirect_to))
        except IntegrityError:
            # A concurrent callback linked the same identity first.
            db.rollback()
            winner = self._find_connection(db, provider_id, identity.provider_user_id)
            if winner is None:
                return Err(OAuthFailure.ACCOUNT_CONFLICT, "Identity could not be linked")
            return Ok(LinkResult(winner.user, winner.id, False, False, redirect_to))
        except SQLAlchemyError:
            db.rollback()
            raise


def build_oauth_linker() -> OAuthLinker:
    """Compose the linker from application settings."""
    return OAuthLinker(
        timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS,
        state_ttl=timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS),
        link_by_email=settings.OAUTH_LINK_BY_EMAIL,
        require_verified_email=settings.OAUTH_REQUIRE_VERIFIED_EMAIL,
        default_role=UserRole(settings.OAUTH_DEFAULT_ROLE),
        default_redirect=settings.LOGIN_REDIRECT_PATH,
    )


oauth_linker = build_oauth_linker()
