import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from doula_crm.core.auth import AuthUser, get_current_user
from doula_crm.core.config import get_settings
from doula_crm.core.database import get_db
from doula_crm.crm.api import (
    accounts_router,
    activities_router,
    contacts_router,
    leads_router,
    opportunities_router,
)
from doula_crm.metrics import generate_metrics_payload, metrics_content_type

logger = logging.getLogger("doula_crm.api")

router = APIRouter()
for crm_router in (leads_router, accounts_router, contacts_router, opportunities_router, activities_router):
    router.include_router(crm_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    body = {"service": settings.app_name, "environment": settings.app_env, "version": settings.app_version}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", extra={"error": str(exc)})
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={**body, "status": "degraded", "database": "unavailable"},
        )
    return JSONResponse(content={**body, "status": "ok", "database": "ok"})


@router.get("/me", tags=["auth"])
async def me(request: Request, user: AuthUser = Depends(get_current_user)) -> dict[str, object]:
    context = getattr(request.state, "context", None)
    organization_id = getattr(context, "organization_id", None) or user.organization_id
    return {
        "sub": user.sub,
        "permissions": sorted(user.roles),
        "organization_id": str(organization_id) if organization_id else None,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
