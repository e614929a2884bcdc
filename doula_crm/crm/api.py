from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from doula_crm.context import get_correlation_id
from doula_crm.core.auth import AuthUser, get_current_user as get_auth_user
from doula_crm.core.context import parse_organization_id
from doula_crm.core.database import get_db
from doula_crm.crm.schemas import (
    AccountRead,
    AccountSearchResponse,
    ActivityCreate,
    ActivityRead,
    ContactRead,
    ConversionPreview,
    ConvertLeadOptions,
    ConvertLeadRequest,
    ConvertLeadResult,
    LeadCreate,
    LeadRead,
    LeadStatus,
    LeadUpdate,
    OpportunityRead,
    WhoType,
)
from doula_crm.crm.service import (
    AccountService,
    ActivityService,
    ActorUser,
    ContactService,
    LeadConversionService,
    LeadService,
    OpportunityService,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
accounts_router = APIRouter(prefix="/api/crm/accounts", tags=["crm.accounts"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
lead_service = LeadService()
conversion_service = LeadConversionService(lead_service)
account_service = AccountService()
contact_service = ContactService()
opportunity_service = OpportunityService()
activity_service = ActivityService()

CONVERSION_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_converted": status.HTTP_409_CONFLICT,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "idempotency_conflict": status.HTTP_409_CONFLICT,
    "store_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    # The header wins over the token claim so staff can switch practices.
    organization_id = getattr(context, "organization_id", None) or parse_organization_id(auth_user.organization_id)

    return ActorUser(
        user_id=auth_user.sub,
        organization_id=organization_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def _conversion_error(request: Request, code: str | None, message: str | None, details: Any = None) -> JSONResponse:
    resolved = code or "store_error"
    return error_response(
        request,
        status_code=CONVERSION_ERROR_STATUS.get(resolved, status.HTTP_500_INTERNAL_SERVER_ERROR),
        code=f"crm_lead_{resolved}",
        message=message or "Failed to convert lead",
        details=details,
    )


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    lead_status: LeadStatus | None = Query(default=None),
    is_converted: bool | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            user,
            filters={"lead_status": lead_status, "is_converted": is_converted, "q": q},
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_update_failed")


@leads_router.get("/leads/{lead_id}/conversion-preview", response_model=ConversionPreview)
def get_conversion_preview(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ConversionPreview | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_preview_failed")

    preview = conversion_service.get_conversion_preview(db, user, lead_id)
    if preview.data is None:
        details = None
        if preview.error_code == "already_converted":
            lead = lead_service.get_lead(db, user, lead_id)
            details = {"existing_contact_id": str(lead.converted_contact_id) if lead.converted_contact_id else None}
        return _conversion_error(request, preview.error_code, preview.error, details)
    return preview.data


@leads_router.post("/leads/{lead_id}/convert", response_model=ConvertLeadResult)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: ConvertLeadRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> ConvertLeadResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
    except HTTPException as exc:
        return _failed(request, exc, "crm_lead_convert_failed")

    options = ConvertLeadOptions(lead_id=lead_id, **dto.model_dump(exclude_unset=True))
    result = conversion_service.convert_lead(db, user, options, idempotency_key)
    if not result.success:
        details = None
        if result.existing_contact_id is not None:
            details = {"existing_contact_id": str(result.existing_contact_id)}
        return _conversion_error(request, result.error_code, result.error, details)
    return result


@accounts_router.get("/search", response_model=AccountSearchResponse)
def search_accounts(
    request: Request,
    q: str = Query(default=""),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountSearchResponse | JSONResponse:
    try:
        require_permission(user, "crm.accounts.read")
    except HTTPException as exc:
        return _failed(request, exc, "crm_account_search_failed")
    return account_service.search_accounts_for_conversion(db, user, q, limit)


@accounts_router.get("/{account_id}", response_model=AccountRead)
def get_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "crm.accounts.read")
        return account_service.get_account(db, user, account_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_account_get_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_get_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, user, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_get_failed")


@activities_router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    who_type: WhoType = Query(),
    who_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        required = "crm.leads.read" if who_type == "Lead" else "crm.contacts.read"
        require_permission(user, required)
        return activity_service.list_activities_for(db, user, who_type, who_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_list_failed")


@activities_router.post("/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.create_activity(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_create_failed")
