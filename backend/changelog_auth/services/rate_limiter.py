"""Sliding-log rate limiting for the credential endpoints (login, refresh)."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Sequence

from changelog_auth.core.exceptions import RateLimitExceededError


@dataclass(frozen=True)
class RateLimit:
    """At most ``limit`` hits inside any ``window_seconds`` span."""
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


class SlidingLogRateLimiter:
    """
    Per-process limiter that remembers the timestamp of every accepted hit

    Keys are ``{route}:{window}:{subject}`` so the login and refresh
    endpoints never share a budget. Suitable for single-node deployments.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    def hit(self, key: str, rule: RateLimit) -> RateDecision:
        """Record one hit for ``key`` unless the window is already full."""
        now = self._clock()
        cutoff = now - rule.window_seconds

        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= rule.limit:
                wait = hits[0] + rule.window_seconds - now
                return RateDecision(allowed=False, retry_after=max(1, math.ceil(wait)))

            hits.append(now)
            return RateDecision(allowed=True)

    def enforce(self, route: str, subject: str, rules: Sequence[RateLimit], message: str) -> None:
        """
        Apply every rule for one request

        Raises:
            RateLimitExceededError: carrying the seconds until a retry can pass
        """
        for rule in rules:
            decision = self.hit(f"{route}:{rule.window_seconds}:{subject}", rule)
            if not decision.allowed:
                raise RateLimitExceededError(message, retry_after=decision.retry_after)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


rate_limiter = SlidingLogRateLimiter()
