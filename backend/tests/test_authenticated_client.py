import json
import threading

import httpx
import pytest

from changelog_auth.client import AuthenticatedClient, StoredTokens
from changelog_auth.core.exceptions import SessionExpiredError

REFRESH_PATH = "/api/v1/auth/refresh"


class FakeApi:
    """Accepts only ``valid_access``; rotates on a valid refresh token."""

    def __init__(self, valid_access="a2", valid_refresh="r1", new_refresh="r2"):
        self.valid_access = valid_access
        self.valid_refresh = valid_refresh
        self.new_refresh = new_refresh
        self.refresh_calls = 0
        self.resource_calls = 0
        self.refresh_gate = None
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == REFRESH_PATH:
            with self._lock:
                self.refresh_calls += 1
            if self.refresh_gate is not None:
                self.refresh_gate.wait(5)
            body = json.loads(request.content or b"{}")
            if body.get("refresh_token") != self.valid_refresh:
                return httpx.Response(401, json={"success": False, "code": "invalidated"})
            return httpx.Response(200, json={"access_token": self.valid_access, "refresh_token": self.new_refresh})

        with self._lock:
            self.resource_calls += 1
        if request.headers.get("Authorization") == f"Bearer {self.valid_access}":
            return httpx.Response(200, json={"items": [1, 2, 3]})
        return httpx.Response(401, json={"success": False, "code": "expired"})


def _client(api, access="a1", refresh="r1", **kwargs):
    return AuthenticatedClient(
        "https://changelog.test",
        access_token=access,
        refresh_token=refresh,
        transport=httpx.MockTransport(api),
        **kwargs,
    )


def test_valid_token_needs_no_refresh():
    api = FakeApi()
    with _client(api, access="a2") as client:
        response = client.get("/api/v1/changelogs")
    assert response.status_code == 200
    assert api.refresh_calls == 0
    assert api.resource_calls == 1


def test_expired_access_recovers_with_one_refresh_and_one_retry():
    api = FakeApi()
    with _client(api) as client:
        response = client.get("/api/v1/changelogs")
        assert client.tokens == StoredTokens("a2", "r2")
        assert client.refresh_count == 1

    assert response.status_code == 200
    assert response.json() == {"items": [1, 2, 3]}
    assert api.refresh_calls == 1
    assert api.resource_calls == 2


def test_invalid_refresh_token_expires_session_and_clears_tokens():
    api = FakeApi(valid_refresh="something-else")
    with _client(api) as client:
        with pytest.raises(SessionExpiredError):
            client.get("/api/v1/changelogs")
        assert client.tokens == StoredTokens(None, None)
    assert api.refresh_calls == 1


def test_missing_refresh_token_fails_without_refresh_call():
    api = FakeApi()
    with _client(api, refresh=None) as client:
        with pytest.raises(SessionExpiredError):
            client.get("/api/v1/changelogs")
    assert api.refresh_calls == 0
    assert api.resource_calls == 1


def test_retry_result_is_returned_even_when_rejected_again():
    api = FakeApi(valid_access="never-accepted")

    def refresher(refresh_token):
        return StoredTokens("a2", "r2")

    with _client(api, refresher=refresher) as client:
        response = client.get("/api/v1/changelogs")
        assert client.refresh_count == 1

    assert response.status_code == 401
    assert api.resource_calls == 2


def test_refresh_transport_error_is_session_expired():
    def handler(request):
        if request.url.path == REFRESH_PATH:
            raise httpx.ConnectTimeout("refresh timed out", request=request)
        return httpx.Response(401)

    client = AuthenticatedClient(
        "https://changelog.test",
        access_token="a1",
        refresh_token="r1",
        transport=httpx.MockTransport(handler),
    )
    with client:
        with pytest.raises(SessionExpiredError):
            client.post("/api/v1/changelogs", json={"title": "v2"})
        assert client.tokens == StoredTokens(None, None)


def test_malformed_refresh_response_is_session_expired():
    def handler(request):
        if request.url.path == REFRESH_PATH:
            return httpx.Response(200, content=b"<html>oops</html>")
        return httpx.Response(401)

    client = AuthenticatedClient(
        "https://changelog.test",
        access_token="a1",
        refresh_token="r1",
        transport=httpx.MockTransport(handler),
    )
    with client:
        with pytest.raises(SessionExpiredError):
            client.get("/api/v1/changelogs")


def test_unexpected_refresher_error_is_session_expired():
    def broken_refresher(refresh_token):
        raise RuntimeError("db down")

    api = FakeApi()
    with _client(api, refresher=broken_refresher) as client:
        with pytest.raises(SessionExpiredError) as excinfo:
            client.get("/api/v1/changelogs")
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert client.tokens == StoredTokens(None, None)
    assert api.refresh_calls == 0


def test_concurrent_rejections_share_one_refresh():
    workers = 6
    api = FakeApi()
    api.refresh_gate = threading.Event()
    rejections = []
    rejections_lock = threading.Lock()
    original_call = api.__call__

    def counting_handler(request):
        response = original_call(request)
        if request.url.path != REFRESH_PATH and response.status_code == 401:
            with rejections_lock:
                rejections.append(request)
                if len(rejections) == workers:
                    api.refresh_gate.set()
        return response

    client = AuthenticatedClient(
        "https://changelog.test",
        access_token="a1",
        refresh_token="r1",
        transport=httpx.MockTransport(counting_handler),
    )
    results = []
    errors = []
    start = threading.Barrier(workers)

    def worker():
        start.wait()
        try:
            results.append(client.get("/api/v1/changelogs").status_code)
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    client.close()

    assert errors == []
    assert results == [200] * workers
    assert api.refresh_calls == 1
    assert client.refresh_count == 1
    assert client.tokens == StoredTokens("a2", "r2")


def test_request_rejected_with_replaced_token_reuses_replacement():
    api = FakeApi()
    with _client(api) as client:
        client.get("/api/v1/changelogs")
        # A response for the old token arriving late must not refresh again.
        assert client._refresh_after_rejection("a1") == "a2"
    assert api.refresh_calls == 1
