from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from doula_crm.context import request_scope

CORRELATION_HEADER = "x-correlation-id"
ORGANIZATION_HEADER = "x-organization-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        organization_id = request.headers.get(ORGANIZATION_HEADER) or None
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if organization_id:
                span.set_attribute("organization_id", organization_id)

        with request_scope(correlation_id, organization_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
