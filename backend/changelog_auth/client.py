"""HTTP client that attaches access tokens and recovers from one expiry.

Protocol per request: send with the current access token; on 401, obtain a
new pair through a single refresh (shared by every request that was
rejected with the same token) and retry exactly once. A failed refresh
clears the stored tokens and raises ``SessionExpiredError``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import httpx

from changelog_auth.core.exceptions import SessionExpiredError

logger = logging.getLogger(__name__)

REJECTED_STATUSES = frozenset({401})


@dataclass(frozen=True)
class StoredTokens:
    access_token: Optional[str]
    refresh_token: Optional[str]


Refresher = Callable[[str], StoredTokens]


class _RefreshFlight:
    """Outcome of one in-flight refresh, awaited by concurrent callers."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self._access_token: Optional[str] = None

    def resolve(self, access_token: Optional[str]) -> None:
        self._access_token = access_token
        self._done.set()

    def wait(self, timeout: float) -> str:
        if not self._done.wait(timeout) or not self._access_token:
            raise SessionExpiredError()
        return self._access_token


class AuthenticatedClient:
    """
    Thread-safe wrapper around ``httpx.Client``.

    Args:
        base_url: API origin, e.g. ``https://changelog.example.com``
        access_token: Initial access token
        refresh_token: Initial refresh token
        refresh_path: Endpoint used for the refresh round trip
        timeout: Bound for every request, including the refresh
        refresher: Replaces the HTTP refresh call (takes the refresh
            token, returns the new pair, raises SessionExpiredError)
        transport: Optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        refresh_path: str = "/api/v1/auth/refresh",
        timeout: float = 10.0,
        refresher: Optional[Refresher] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._lock = threading.Lock()
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._flight: Optional[_RefreshFlight] = None
        self.refresh_path = refresh_path
        self.timeout = timeout
        self._refresher = refresher or self._refresh_over_http
        self.refresh_count = 0

    @property
    def tokens(self) -> StoredTokens:
        with self._lock:
            return StoredTokens(self._access_token, self._refresh_token)

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        with self._lock:
            self._access_token = access_token
            self._refresh_token = refresh_token

    def clear_tokens(self) -> None:
        self.set_tokens(None, None)

    def _send(self, method: str, url: str, access_token: Optional[str], **kwargs: Any) -> httpx.Response:
        headers = httpx.Headers(kwargs.pop("headers", None))
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        else:
            headers.pop("Authorization", None)
        return self._http.request(method, url, headers=headers, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send an authenticated request

        Returns:
            The first response, or the single retry's response after a refresh

        Raises:
            SessionExpiredError: the session cannot be recovered
        """
        used_token = self.tokens.access_token
        response = self._send(method, url, used_token, **dict(kwargs))
        if response.status_code not in REJECTED_STATUSES:
            return response

        response.close()
        new_token = self._refresh_after_rejection(used_token)
        return self._send(method, url, new_token, **dict(kwargs))

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("DELETE", url, **kwargs)

    def _refresh_after_rejection(self, rejected_token: Optional[str]) -> str:
        """
        Single-flight refresh keyed on the rejected access token

        A request rejected with a token that has since been replaced reuses
        the replacement; concurrent rejections share one refresh call.
        """
        with self._lock:
            if self._access_token and self._access_token != rejected_token:
                return self._access_token
            flight = self._flight
            leader = flight is None
            if leader:
                if not self._refresh_token:
                    raise SessionExpiredError("No refresh token available")
                flight = self._flight = _RefreshFlight()
                refresh_token = self._refresh_token

        if not leader:
            return flight.wait(self.timeout)

        new_access: Optional[str] = None
        try:
            new_access, new_refresh = self._call_refresher(refresh_token)
        finally:
            with self._lock:
                if new_access:
                    self._access_token, self._refresh_token = new_access, new_refresh
                else:
                    self._access_token = self._refresh_token = None
                self._flight = None
            flight.resolve(new_access)

        return new_access

    def _call_refresher(self, refresh_token: str) -> Tuple[str, Optional[str]]:
        self.refresh_count += 1
        try:
            pair = self._refresher(refresh_token)
        except SessionExpiredError:
            logger.info("Refresh rejected; session expired")
            raise
        except Exception as exc:
            logger.warning("Refresher failed: %s", exc.__class__.__name__)
            raise SessionExpiredError("Unable to refresh session") from exc
        if not pair.access_token:
            raise SessionExpiredError("Refresh returned no access token")
        return pair.access_token, pair.refresh_token or refresh_token

    def _refresh_over_http(self, refresh_token: str) -> StoredTokens:
        try:
            response = self._http.post(self.refresh_path, json={"refresh_token": refresh_token})
        except httpx.HTTPError as exc:
            logger.warning("Refresh request failed: %s", exc.__class__.__name__)
            raise SessionExpiredError("Unable to refresh session") from exc

        if response.status_code != 200:
            raise SessionExpiredError()
        try:
            payload = response.json()
        except ValueError as exc:
            raise SessionExpiredError("Malformed refresh response") from exc
        if not isinstance(payload, dict):
            raise SessionExpiredError("Malformed refresh response")
        return StoredTokens(payload.get("access_token"), payload.get("refresh_token"))

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "AuthenticatedClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
