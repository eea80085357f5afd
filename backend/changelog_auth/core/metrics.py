"""Prometheus metrics shared by the HTTP layer and the session core."""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "changelog_auth_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "changelog_auth_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
SESSION_EVENTS = Counter(
    "changelog_auth_session_events_total",
    "Session lifecycle events by outcome",
    ["event", "outcome"],
)


def record_session_event(event: str, outcome: str) -> None:
    SESSION_EVENTS.labels(event, outcome).inc()
