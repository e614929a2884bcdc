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

crm_lead_conversions_total = Counter(
    "crm_lead_conversions_total",
    "Lead conversion attempts by outcome and account option",
    ["outcome", "account_option"],
)
crm_lead_conversion_duration_seconds = Histogram(
    "crm_lead_conversion_duration_seconds",
    "Lead conversion duration in seconds",
    ["outcome"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
crm_account_searches_total = Counter(
    "crm_account_searches_total",
    "Account searches issued from the conversion wizard",
    ["outcome"],
)

# Identifier segments collapse to ``{id}`` so label cardinality stays bounded.
_ID_SEGMENT = re.compile(
    r"/(?:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}|\d+)(?=/|$)"
)
_TEMPLATE_PARAM = re.compile(r"\{[^{}]+\}")


def path_label(path: str) -> str:
    if "{" in path:
        return _TEMPLATE_PARAM.sub("{id}", path)
    return _ID_SEGMENT.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return path_label(template if isinstance(template, str) and template else request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_conversion(outcome: str, account_option: str, duration: float) -> None:
    crm_lead_conversions_total.labels(outcome=outcome, account_option=account_option).inc()
    crm_lead_conversion_duration_seconds.labels(outcome=outcome).observe(duration)


def observe_account_search(outcome: str) -> None:
    crm_account_searches_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
