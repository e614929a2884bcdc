import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from doula_crm import events
from doula_crm.api.routes import router as api_router
from doula_crm.core.config import get_settings
from doula_crm.core.context import RequestContextMiddleware
from doula_crm.logging import configure_logging
from doula_crm.middleware.correlation_id import CorrelationIdMiddleware
from doula_crm.middleware.request_logging import RequestLoggingMiddleware
from doula_crm.otel import get_fastapi_server_request_hook, setup_otel

configure_logging()
logger = logging.getLogger("doula_crm.lifecycle")

CRM_EVENT_TYPES = ("crm.lead.created", "crm.lead.updated", "crm.lead.converted")


def log_domain_event(event: events.DomainEvent) -> None:
    payload = event.envelope.get("payload") or {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.event_type,
            "organization_id": event.envelope.get("organization_id"),
            "lead_id": payload.get("lead_id"),
            "account_id": payload.get("account_id"),
            "contact_id": payload.get("contact_id"),
            "opportunity_id": payload.get("opportunity_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    for event_type in CRM_EVENT_TYPES:
        events.bus.subscribe(event_type, log_domain_event)
    logger.info("system_started", extra={"event_name": "system.started"})
    yield
    for event_type in CRM_EVENT_TYPES:
        events.bus.unsubscribe(event_type, log_domain_event)


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
# Starlette runs the last-added middleware first: correlation scope wraps logging wraps context.
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)
if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
