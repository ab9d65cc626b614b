"""Prometheus collectors shared by the app and the auth services."""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "nutriclinic_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "nutriclinic_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
LOGIN_OUTCOMES = Counter(
    "nutriclinic_login_total",
    "Login attempts by outcome",
    ["outcome"],
)
REFRESH_OUTCOMES = Counter(
    "nutriclinic_refresh_total",
    "Refresh-token exchanges by outcome",
    ["outcome"],
)
LOCKOUTS = Counter(
    "nutriclinic_login_lockouts_total",
    "Lockouts triggered by repeated login failures",
)
