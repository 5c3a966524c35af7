from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

authz_denials_total = Counter(
    "crm_authz_denials_total",
    "Permission checks that were denied",
    ["resource", "action"],
)

login_attempts_total = Counter(
    "crm_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)

session_events_total = Counter(
    "crm_session_events_total",
    "Session lifecycle transitions",
    ["event"],
)

active_sessions_gauge = Gauge(
    "crm_active_sessions",
    "Active sessions seen by the last cleanup run",
)

opportunity_stage_transitions_total = Counter(
    "crm_opportunity_stage_transitions_total",
    "Opportunity stage transitions",
    ["from_stage", "to_stage"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_authz_denial(resource: str, action: str) -> None:
    authz_denials_total.labels(resource=resource, action=action).inc()


def observe_login_attempt(outcome: str) -> None:
    login_attempts_total.labels(outcome=outcome).inc()


def observe_session_event(event: str) -> None:
    session_events_total.labels(event=event).inc()


def set_active_sessions(count: int) -> None:
    active_sessions_gauge.set(count)


def observe_stage_transition(from_stage: str | None, to_stage: str) -> None:
    opportunity_stage_transitions_total.labels(from_stage=from_stage or "none", to_stage=to_stage).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
