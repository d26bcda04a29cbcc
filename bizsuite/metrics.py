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

crm_derivations_total = Counter(
    "crm_derivations_total",
    "Derived-field computations run before persistence",
    ["entity"],
)

crm_aggregate_recalculations_total = Counter(
    "crm_aggregate_recalculations_total",
    "Parent aggregate recalculations by outcome",
    ["aggregate", "outcome"],
)

crm_aggregate_recalculation_seconds = Histogram(
    "crm_aggregate_recalculation_seconds",
    "Parent aggregate recalculation duration in seconds",
    ["aggregate"],
)

tenant_scope_denied_total = Counter(
    "tenant_scope_denied_total",
    "Writes rejected by the tenant scope filter",
    ["resource", "action"],
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
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return path_format
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_derivation(entity: str) -> None:
    crm_derivations_total.labels(entity=entity).inc()


def observe_aggregate_recalculation(aggregate: str, outcome: str, duration: float | None = None) -> None:
    crm_aggregate_recalculations_total.labels(aggregate=aggregate, outcome=outcome).inc()
    if duration is not None:
        crm_aggregate_recalculation_seconds.labels(aggregate=aggregate).observe(duration)


def observe_tenant_scope_denied(resource: str, action: str) -> None:
    tenant_scope_denied_total.labels(resource=resource, action=action).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
