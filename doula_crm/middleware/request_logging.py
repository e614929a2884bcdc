from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from doula_crm.context import get_organization_id
from doula_crm.metrics import observe_http_request, resolve_http_path_label

logger = logging.getLogger("doula_crm.request")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log one ``http.request`` line per request and feed the HTTP metrics.

    Responses with a 5xx status are logged at WARNING; exceptions escaping the
    app are logged as ``http.error`` with the traceback and re-raised.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        fields = {
            "method": request.method,
            "path": resolve_http_path_label(request),
            "organization_id": get_organization_id(),
        }
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = _elapsed_ms(started)
            observe_http_request(fields["method"], fields["path"], 500, duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra={**fields, "status_code": 500, "duration_ms": duration_ms})
            raise

        duration_ms = _elapsed_ms(started)
        observe_http_request(fields["method"], fields["path"], response.status_code, duration_ms / 1000)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={**fields, "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response
