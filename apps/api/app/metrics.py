from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
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

crm_opportunity_transitions_total = Counter(
    "crm_opportunity_transitions_total",
    "Opportunity stage transitions by target stage and outcome",
    ["to_stage", "outcome"],
)

crm_generated_tasks_total = Counter(
    "crm_generated_tasks_total",
    "Follow-up tasks generated from stage templates",
    ["stage"],
)

crm_transition_conflicts_total = Counter(
    "crm_transition_conflicts_total",
    "Transitions rejected because of a concurrent writer",
    ["reason"],
)

crm_conversations_relinked_total = Counter(
    "crm_conversations_relinked_total",
    "Conversation records whose entity references were rewritten",
    ["source"],
)

crm_conversions_total = Counter(
    "crm_conversions_total",
    "Completed lead and opportunity conversions",
    ["kind"],
)

crm_transition_duration_seconds = Histogram(
    "crm_transition_duration_seconds",
    "Opportunity transition duration in seconds",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(to_stage: str, outcome: str, duration: float) -> None:
    crm_opportunity_transitions_total.labels(to_stage=to_stage, outcome=outcome).inc()
    crm_transition_duration_seconds.observe(duration)


def observe_generated_tasks(stage: str, count: int) -> None:
    if count > 0:
        crm_generated_tasks_total.labels(stage=stage).inc(count)


def observe_transition_conflict(reason: str) -> None:
    crm_transition_conflicts_total.labels(reason=reason).inc()


def observe_relinked(source: str, count: int) -> None:
    if count > 0:
        crm_conversations_relinked_total.labels(source=source).inc(count)


def observe_conversion(kind: str) -> None:
    crm_conversions_total.labels(kind=kind).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
