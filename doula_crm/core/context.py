import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    user_id: str | None
    organization_id: uuid.UUID | None


def parse_organization_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach the tenant and request id to ``request.state.context``.

    A malformed ``X-Organization-Id`` is treated as absent so the request sees
    no tenant data rather than failing outright.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        request.state.context = RequestContext(
            request_id=request_id,
            user_id=None,
            organization_id=parse_organization_id(request.headers.get("x-organization-id")),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response
