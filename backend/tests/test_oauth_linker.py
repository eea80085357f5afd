from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from changelog_auth.core.result import Err, OAuthFailure, Ok
from changelog_auth.models.oauth import OAuthConnection, OAuthProvider
from changelog_auth.models.user import User
from changelog_auth.services.oauth_linker import OAuthLinker, OAuthStateStore, safe_redirect_path

TOKEN_URL = "https://id.example.com/api/oidc/token"
USERINFO_URL = "https://id.example.com/api/oidc/userinfo"


class FakeProvider:
    def __init__(self, userinfo=None, token_status=200, userinfo_status=200):
        self.userinfo = userinfo or {
            "sub": "remote-42",
            "email": "Alice@Example.com",
            "email_verified": True,
            "name": "Alice",
        }
        self.token_status = token_status
        self.userinfo_status = userinfo_status
        self.token_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_requests.append(parse_qs(request.content.decode()))
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "remote-access", "refresh_token": "remote-refresh", "expires_in": 3600})
        if str(request.url) == USERINFO_URL:
            assert request.headers["Authorization"] == "Bearer remote-access"
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status)
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)


@pytest.fixture
def provider(db):
    provider = OAuthProvider(
        name="PocketID",
        client_id="client-1",
        client_secret="secret-1",
        authorization_url="https://id.example.com/authorize",
        token_url=TOKEN_URL,
        userinfo_url=USERINFO_URL,
        callback_url="http://localhost:3000/api/v1/auth/oauth/callback/pocketid",
        scopes=["openid", "profile", "email"],
        enabled=True,
        is_default=True,
    )
    db.add(provider)
    db.commit()
    db.refresh(provider)
    return provider


def _linker(clock, remote, **kwargs):
    return OAuthLinker(
        OAuthStateStore(),
        clock=clock,
        transport=httpx.MockTransport(remote),
        **kwargs,
    )


def _login(db, linker, provider_key="pocketid", redirect_to=None):
    started = linker.initiate(db, provider_key, redirect_to)
    assert isinstance(started, Ok)
    return linker.handle_callback(db, provider_key, "auth-code", started.value.state)


def test_initiate_builds_authorization_url(db, clock, provider):
    linker = _linker(clock, FakeProvider())
    result = linker.initiate(db, provider.id, "/changelogs/3")

    assert isinstance(result, Ok)
    url = urlparse(result.value.url)
    query = parse_qs(url.query)
    assert f"{url.scheme}://{url.netloc}{url.path}" == provider.authorization_url
    assert query["client_id"] == ["client-1"]
    assert query["redirect_uri"] == [provider.callback_url]
    assert query["response_type"] == ["code"]
    assert query["scope"] == ["openid profile email"]
    assert query["state"] == [result.value.state]
    assert result.value.redirect_to == "/changelogs/3"
    assert len(linker.state_store) == 1


def test_initiate_unknown_and_disabled_providers(db, clock, provider):
    linker = _linker(clock, FakeProvider())
    assert linker.initiate(db, "github").kind is OAuthFailure.UNKNOWN_PROVIDER
    assert linker.initiate(db, 9999).kind is OAuthFailure.UNKNOWN_PROVIDER

    provider.enabled = False
    db.commit()
    assert linker.initiate(db, "PocketID").kind is OAuthFailure.PROVIDER_DISABLED


def test_callback_creates_user_and_connection(db, clock, provider):
    remote = FakeProvider()
    linker = _linker(clock, remote)

    result = _login(db, linker, redirect_to="/settings")

    assert isinstance(result, Ok)
    linked = result.value
    assert linked.created_user is True
    assert linked.created_connection is True
    assert linked.redirect_to == "/settings"
    assert linked.user.email == "alice@example.com"
    assert linked.user.password_hash is None
    assert linked.user.role == "VIEWER"

    connection = db.get(OAuthConnection, linked.connection_id)
    assert connection.provider_user_id == "remote-42"
    assert connection.access_token == "remote-access"
    assert connection.refresh_token == "remote-refresh"
    assert remote.token_requests[0]["code"] == ["auth-code"]
    assert remote.token_requests[0]["grant_type"] == ["authorization_code"]


def test_same_remote_identity_resolves_to_same_user(db, clock, provider):
    linker = _linker(clock, FakeProvider())
    first = _login(db, linker)
    second = _login(db, linker)

    assert first.value.user.id == second.value.user.id
    assert second.value.created_user is False
    assert second.value.created_connection is False
    assert db.query(User).count() == 1
    assert db.query(OAuthConnection).count() == 1


def test_existing_connection_wins_over_changed_email(db, clock, provider, user_factory):
    linker = _linker(clock, FakeProvider())
    first = _login(db, linker)
    user_factory(email="bob@example.com")

    moved = FakeProvider(userinfo={"sub": "remote-42", "email": "bob@example.com", "email_verified": True})
    second = _login(db, _linker(clock, moved))

    assert second.value.user.id == first.value.user.id


def test_verified_email_links_existing_user(db, clock, provider, user_factory):
    existing = user_factory(email="alice@example.com")
    result = _login(db, _linker(clock, FakeProvider()))

    assert result.value.user.id == existing.id
    assert result.value.created_user is False
    assert result.value.created_connection is True


def test_unverified_email_does_not_merge_accounts(db, clock, provider, user_factory):
    user_factory(email="alice@example.com")
    remote = FakeProvider(userinfo={"sub": "remote-7", "email": "alice@example.com", "email_verified": False})

    result = _login(db, _linker(clock, remote))

    assert result.kind is OAuthFailure.ACCOUNT_CONFLICT
    assert db.query(OAuthConnection).count() == 0
    assert db.query(User).count() == 1


def test_email_linking_can_be_disabled(db, clock, provider, user_factory):
    user_factory(email="alice@example.com")
    result = _login(db, _linker(clock, FakeProvider(), link_by_email=False))
    assert result.kind is OAuthFailure.ACCOUNT_CONFLICT


def test_unverified_email_allowed_when_policy_relaxed(db, clock, provider, user_factory):
    existing = user_factory(email="alice@example.com")
    remote = FakeProvider(userinfo={"sub": "remote-7", "email": "alice@example.com"})
    result = _login(db, _linker(clock, remote, require_verified_email=False))
    assert result.value.user.id == existing.id


def test_second_identity_for_linked_user_conflicts(db, clock, provider):
    _login(db, _linker(clock, FakeProvider()))
    other = FakeProvider(userinfo={"sub": "remote-99", "email": "alice@example.com", "email_verified": True})

    result = _login(db, _linker(clock, other))

    assert result.kind is OAuthFailure.ACCOUNT_CONFLICT
    assert db.query(OAuthConnection).count() == 1


def test_state_is_single_use(db, clock, provider):
    linker = _linker(clock, FakeProvider())
    state = linker.initiate(db, "pocketid").value.state

    assert isinstance(linker.handle_callback(db, "pocketid", "auth-code", state), Ok)
    replay = linker.handle_callback(db, "pocketid", "auth-code", state)
    assert replay.kind is OAuthFailure.STATE_MISMATCH


def test_unknown_or_expired_state_is_rejected(db, clock, provider):
    remote = FakeProvider()
    linker = _linker(clock, remote, state_ttl=timedelta(minutes=10))

    assert linker.handle_callback(db, "pocketid", "auth-code", "forged").kind is OAuthFailure.STATE_MISMATCH

    state = linker.initiate(db, "pocketid").value.state
    clock.advance(minutes=10)
    assert linker.handle_callback(db, "pocketid", "auth-code", state).kind is OAuthFailure.STATE_MISMATCH
    assert remote.token_requests == []


def test_state_is_bound_to_its_provider(db, clock, provider):
    other = OAuthProvider(
        name="Easypanel",
        client_id="c",
        client_secret="s",
        authorization_url="https://panel.example.com/oauth/authorize",
        token_url="https://panel.example.com/oauth/token",
        userinfo_url="https://panel.example.com/oauth/userinfo",
        callback_url="http://localhost:3000/api/v1/auth/oauth/callback/easypanel",
        scopes=["openid"],
    )
    db.add(other)
    db.commit()
    linker = _linker(clock, FakeProvider())
    state = linker.initiate(db, "pocketid").value.state

    assert linker.handle_callback(db, "easypanel", "auth-code", state).kind is OAuthFailure.STATE_MISMATCH


def test_token_endpoint_failure(db, clock, provider):
    result = _login(db, _linker(clock, FakeProvider(token_status=400)))
    assert result.kind is OAuthFailure.EXCHANGE_FAILED
    assert db.query(User).count() == 0


def test_token_endpoint_timeout(db, clock, provider):
    def handler(request):
        raise httpx.ReadTimeout("slow provider", request=request)

    result = _login(db, _linker(clock, handler))
    assert result.kind is OAuthFailure.EXCHANGE_FAILED


def test_userinfo_failure(db, clock, provider):
    result = _login(db, _linker(clock, FakeProvider(userinfo_status=500)))
    assert result.kind is OAuthFailure.USER_INFO_FAILED
    assert db.query(OAuthConnection).count() == 0


def test_userinfo_without_subject_or_email(db, clock, provider):
    no_subject = FakeProvider(userinfo={"email": "a@example.com", "email_verified": True})
    assert _login(db, _linker(clock, no_subject)).kind is OAuthFailure.USER_INFO_FAILED

    no_email = FakeProvider(userinfo={"sub": "remote-1"})
    assert _login(db, _linker(clock, no_email)).kind is OAuthFailure.USER_INFO_FAILED
    assert db.query(User).count() == 0


def test_unsafe_redirects_fall_back():
    assert safe_redirect_path("/changelogs", "/dashboard") == "/changelogs"
    assert safe_redirect_path("https://evil.example.com", "/dashboard") == "/dashboard"
    assert safe_redirect_path("//evil.example.com", "/dashboard") == "/dashboard"
    assert safe_redirect_path(None, "/dashboard") == "/dashboard"


def test_failed_callback_result_is_err(db, clock, provider):
    result = _login(db, _linker(clock, FakeProvider(token_status=503)))
    assert isinstance(result, Err)
    assert result.message


def test_state_is_checked_before_the_provider(db, clock, provider):
    remote = FakeProvider()
    linker = _linker(clock, remote)

    forged = linker.handle_callback(db, "no-such-provider", "auth-code", "forged")
    assert forged.kind is OAuthFailure.STATE_MISMATCH

    state = linker.initiate(db, "pocketid").value.state
    provider.enabled = False
    db.commit()
    disabled = linker.handle_callback(db, "pocketid", "auth-code", state)
    assert disabled.kind is OAuthFailure.PROVIDER_DISABLED
    assert remote.token_requests == []
