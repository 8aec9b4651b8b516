"""Prometheus counters for security-relevant outcomes (exposed at /metrics)."""

from prometheus_client import Counter

AUTH_EVENTS = Counter(
    "ums_auth_events_total",
    "Authentication lifecycle events",
    ["event", "outcome"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "ums_rate_limit_rejections_total",
    "Requests rejected by the per-user rate limiter",
    ["policy"],
)
CSRF_FAILURES = Counter(
    "ums_csrf_failures_total",
    "Mutating requests rejected by the CSRF guard",
    ["reason"],
)
