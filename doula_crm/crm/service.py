from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from doula_crm import audit, events
from doula_crm.core.config import get_settings
from doula_crm.crm.mapping import (
    ATTRIBUTION_FIELDS,
    default_opportunity_amount,
    generate_opportunity_name,
    map_lead_to_account,
    map_lead_to_contact,
    stage_probability,
)
from doula_crm.crm.models import (
    CRMAccount,
    CRMActivity,
    CRMContact,
    CRMContactAccountRelationship,
    CRMIdempotencyKey,
    CRMLead,
    CRMOpportunity,
)
from doula_crm.crm.schemas import (
    AccountRead,
    AccountSearchResponse,
    AccountSearchResult,
    ActivityCreate,
    ActivityRead,
    ContactRead,
    ConversionErrorCode,
    ConversionPreview,
    ConversionPreviewResponse,
    ConvertLeadOptions,
    ConvertLeadResult,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    LeadValidation,
    OpportunityRead,
)
from doula_crm.metrics import observe_account_search, observe_lead_conversion


logger = logging.getLogger("doula_crm.crm.conversion")
tracer = trace.get_tracer("doula_crm.crm.conversion")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    organization_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class ConversionError(Exception):
    def __init__(
        self,
        code: ConversionErrorCode,
        message: str,
        *,
        existing_contact_id: uuid.UUID | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.existing_contact_id = existing_contact_id


def idempotency_endpoint(actor_user: ActorUser, lead_id: uuid.UUID) -> str:
    # Keys are per tenant: another organization must never replay this result.
    return f"crm.lead.convert:{actor_user.organization_id}:{lead_id}"


def options_hash(options: ConvertLeadOptions) -> str:
    return hashlib.sha256(json.dumps(options.model_dump(mode="json"), sort_keys=True).encode("utf-8")).hexdigest()


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        if actor_user.organization_id is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="organization is required")
        if dto.lead_status == "converted":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="leads can only become converted through conversion",
            )

        payload = dto.model_dump()
        payload["email"] = str(dto.email) if dto.email is not None else None
        lead = CRMLead(
            organization_id=actor_user.organization_id,
            owner_id=actor_user.user_id,
            **payload,
        )
        session.add(lead)
        session.flush()
        lead_read = self._to_read(lead)

        audit.record(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="create",
            after=lead_read.model_dump(mode="json"),
        )
        session.commit()
        events.publish(
            "crm.lead.created",
            actor_user_id=actor_user.user_id,
            organization_id=lead.organization_id,
            payload={"lead_id": str(lead.id), "lead_status": lead.lead_status},
            correlation_id=actor_user.correlation_id,
        )
        return self._to_read(self._get_scoped_lead(session, actor_user, lead.id))

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead).where(CRMLead.organization_id == actor_user.organization_id)

        if filters.get("lead_status"):
            stmt = stmt.where(CRMLead.lead_status == filters["lead_status"])
        if filters.get("is_converted") is not None:
            stmt = stmt.where(CRMLead.is_converted.is_(bool(filters["is_converted"])))
        if filters.get("q"):
            q = _escape_like(str(filters["q"]).strip())
            stmt = stmt.where(
                or_(
                    CRMLead.first_name.ilike(f"%{q}%", escape="\\"),
                    CRMLead.last_name.ilike(f"%{q}%", escape="\\"),
                    CRMLead.email.ilike(f"%{q}%", escape="\\"),
                )
            )

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        leads = session.scalars(stmt.order_by(CRMLead.created_at.desc()).offset(offset).limit(limit)).all()
        return [self._to_read(item) for item in leads]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        lead = self._get_scoped_lead(session, actor_user, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return self._to_read(lead)

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_scoped_lead(session, actor_user, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        if lead.is_converted:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="converted lead cannot be updated")

        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if payload.get("lead_status") == "converted":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="leads can only become converted through conversion",
            )
        if "email" in payload:
            payload["email"] = str(payload["email"]) if payload["email"] is not None else None
        if "custom_fields" in payload and payload["custom_fields"] is None:
            payload["custom_fields"] = {}
        if not payload:
            return self._to_read(lead)

        before = self._to_read(lead).model_dump(mode="json")
        payload["updated_at"] = utcnow()
        payload["row_version"] = CRMLead.row_version + 1
        result = session.execute(
            update(CRMLead)
            .where(
                and_(
                    CRMLead.id == lead.id,
                    CRMLead.row_version == dto.row_version,
                    CRMLead.is_converted.is_(False),
                )
            )
            .values(**payload)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.refresh(lead)
        updated = self._to_read(lead)
        audit.record(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
        )
        session.commit()
        events.publish(
            "crm.lead.updated",
            actor_user_id=actor_user.user_id,
            organization_id=updated.organization_id,
            payload={"lead_id": str(updated.id), "lead_status": updated.lead_status},
            correlation_id=actor_user.correlation_id,
        )
        return updated

    def validate_lead_for_conversion(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
    ) -> LeadValidation:
        lead = self._get_scoped_lead(session, actor_user, lead_id)
        if lead is None:
            return LeadValidation(valid=False, error="Lead not found", error_code="not_found")
        if lead.is_converted:
            return LeadValidation(
                valid=False,
                lead=self._to_read(lead),
                error="This lead has already been converted",
                error_code="already_converted",
            )
        return LeadValidation(valid=True, lead=self._to_read(lead))

    def _get_scoped_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead | None:
        return session.scalar(
            select(CRMLead).where(
                and_(CRMLead.id == lead_id, CRMLead.organization_id == actor_user.organization_id)
            )
        )

    def _to_read(self, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(lead)


class AccountService:
    entity_type = "crm.account"

    def get_account(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> AccountRead:
        account = session.scalar(
            select(CRMAccount).where(
                and_(CRMAccount.id == account_id, CRMAccount.organization_id == actor_user.organization_id)
            )
        )
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
        return AccountRead.model_validate(account)

    def search_accounts_for_conversion(
        self,
        session: Session,
        actor_user: ActorUser,
        term: str | None,
        limit: int | None = None,
    ) -> AccountSearchResponse:
        """Find household accounts a converting lead could join.

        A blank term never reaches the database. Store failures come back as
        ``{"data": None, "error": ...}`` so the caller can show "no results".
        """
        if term is None or not term.strip():
            return AccountSearchResponse(data=[], error=None)

        settings = get_settings()
        resolved_limit = limit if limit is not None else settings.account_search_default_limit
        resolved_limit = max(1, min(resolved_limit, settings.account_search_max_limit))
        pattern = f"%{_escape_like(term.strip())}%"

        try:
            accounts = session.scalars(
                select(CRMAccount)
                .where(
                    and_(
                        CRMAccount.organization_id == actor_user.organization_id,
                        CRMAccount.name.ilike(pattern, escape="\\"),
                    )
                )
                .options(selectinload(CRMAccount.primary_contact))
                .order_by(CRMAccount.name.asc())
                .limit(resolved_limit)
            ).all()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_account_search("error")
            logger.warning(
                "account_search.failed",
                extra={"organization_id": str(actor_user.organization_id), "error": str(exc)},
            )
            return AccountSearchResponse(data=None, error="Account search failed")

        observe_account_search("ok")
        return AccountSearchResponse(data=[self._to_search_result(account) for account in accounts], error=None)

    def _to_search_result(self, account: CRMAccount) -> AccountSearchResult:
        contact = account.primary_contact
        primary_contact_name = None
        if contact is not None:
            primary_contact_name = f"{contact.first_name or ''} {contact.last_name or ''}".strip() or None
        return AccountSearchResult(
            id=account.id,
            name=account.name,
            account_type=account.account_type,
            account_status=account.account_status,
            primary_contact_name=primary_contact_name,
        )


class ContactService:
    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        contact = session.scalar(
            select(CRMContact).where(
                and_(CRMContact.id == contact_id, CRMContact.organization_id == actor_user.organization_id)
            )
        )
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return ContactRead.model_validate(contact)


class OpportunityService:
    def get_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = session.scalar(
            select(CRMOpportunity).where(
                and_(
                    CRMOpportunity.id == opportunity_id,
                    CRMOpportunity.organization_id == actor_user.organization_id,
                )
            )
        )
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return OpportunityRead.model_validate(opportunity)


class ActivityService:
    entity_type = "crm.activity"

    def create_activity(self, session: Session, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        who_model = CRMLead if dto.who_type == "Lead" else CRMContact
        who = session.scalar(
            select(who_model).where(
                and_(who_model.id == dto.who_id, who_model.organization_id == actor_user.organization_id)
            )
        )
        if who is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{dto.who_type.lower()} not found")

        activity = CRMActivity(
            organization_id=actor_user.organization_id,
            owner_id=actor_user.user_id,
            activity_type=dto.activity_type,
            subject=dto.subject,
            description=dto.description,
            who_type=dto.who_type,
            who_id=dto.who_id,
            due_date=dto.due_date,
        )
        session.add(activity)
        session.flush()
        created = ActivityRead.model_validate(activity)
        audit.record(
            actor_user,
            entity_type=self.entity_type,
            entity_id=activity.id,
            action="create",
            after=created.model_dump(mode="json"),
        )
        session.commit()
        return created

    def list_activities_for(
        self,
        session: Session,
        actor_user: ActorUser,
        who_type: str,
        who_id: uuid.UUID,
    ) -> list[ActivityRead]:
        activities = session.scalars(
            select(CRMActivity)
            .where(
                and_(
                    CRMActivity.organization_id == actor_user.organization_id,
                    CRMActivity.who_type == who_type,
                    CRMActivity.who_id == who_id,
                )
            )
            .order_by(CRMActivity.created_at.asc())
        ).all()
        return [ActivityRead.model_validate(item) for item in activities]


class LeadConversionService:
    """Turns an unconverted lead into a contact, an account and an optional opportunity.

    Every write of a conversion shares one transaction. The lead row is
    claimed last with a conditional update on ``is_converted = false``; if
    another request got there first the whole conversion rolls back, so a
    lead is converted at most once and no orphan account is left behind.
    """

    entity_type = "crm.lead"

    def __init__(self, lead_service: LeadService | None = None) -> None:
        self.lead_service = lead_service or LeadService()

    def get_conversion_preview(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
    ) -> ConversionPreviewResponse:
        validation = self.lead_service.validate_lead_for_conversion(session, actor_user, lead_id)
        if not validation.valid or validation.lead is None:
            return ConversionPreviewResponse(
                data=None,
                error=validation.error or "Lead not found",
                error_code=validation.error_code or "not_found",
            )

        lead = self.lead_service._get_scoped_lead(session, actor_user, lead_id)
        if lead is None:
            return ConversionPreviewResponse(data=None, error="Lead not found", error_code="not_found")
        return ConversionPreviewResponse(
            data=ConversionPreview(
                lead=validation.lead,
                mapped_contact_data=map_lead_to_contact(lead),
                mapped_account_data=map_lead_to_account(lead),
                suggested_opportunity_name=generate_opportunity_name(lead),
            ),
            error=None,
        )

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        options: ConvertLeadOptions,
        idempotency_key: str | None = None,
    ) -> ConvertLeadResult:
        started = time.perf_counter()
        log_context = {
            "organization_id": str(actor_user.organization_id) if actor_user.organization_id else None,
            "lead_id": str(options.lead_id),
            "account_option": options.account_option,
        }

        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("crm.lead_id", str(options.lead_id))
            span.set_attribute("crm.account_option", options.account_option)
            span.set_attribute("crm.create_opportunity", options.create_opportunity)
            try:
                result = self._convert(session, actor_user, options, idempotency_key)
            except ConversionError as exc:
                session.rollback()
                result = ConvertLeadResult(
                    success=False,
                    error=exc.message,
                    error_code=exc.code,
                    existing_contact_id=exc.existing_contact_id,
                )
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("lead.convert.store_error", extra={**log_context, "error": str(exc)})
                result = ConvertLeadResult(success=False, error="Failed to convert lead", error_code="store_error")
            except Exception as exc:
                session.rollback()
                logger.exception("lead.convert.unexpected_error", extra={**log_context, "error": str(exc)})
                result = ConvertLeadResult(
                    success=False,
                    error="An unexpected error occurred",
                    error_code="store_error",
                )

            if result.success:
                span.set_attribute("crm.contact_id", str(result.contact_id))
                span.set_attribute("crm.account_id", str(result.account_id))
                if result.opportunity_id is not None:
                    span.set_attribute("crm.opportunity_id", str(result.opportunity_id))
            else:
                span.set_attribute("crm.error_code", result.error_code or "unknown")
                span.set_status(Status(StatusCode.ERROR, result.error))

        outcome = "converted" if result.success else (result.error_code or "unknown")
        observe_lead_conversion(outcome, options.account_option, time.perf_counter() - started)
        if result.success:
            logger.info(
                "lead.converted",
                extra={
                    **log_context,
                    "contact_id": str(result.contact_id),
                    "account_id": str(result.account_id),
                    "opportunity_id": str(result.opportunity_id) if result.opportunity_id else None,
                },
            )
        else:
            logger.warning(
                "lead.convert_failed",
                extra={**log_context, "error_code": result.error_code, "error": result.error},
            )
        return result

    def _convert(
        self,
        session: Session,
        actor_user: ActorUser,
        options: ConvertLeadOptions,
        idempotency_key: str | None,
    ) -> ConvertLeadResult:
        endpoint = idempotency_endpoint(actor_user, options.lead_id)
        request_hash = options_hash(options)

        if idempotency_key:
            replayed = self._load_idempotent(session, endpoint, idempotency_key, request_hash)
            if replayed is not None:
                return replayed

        self._validate_options(options)
        lead = self._load_convertible_lead(session, actor_user, options.lead_id)
        previous_status = lead.lead_status

        account = self._resolve_account(session, actor_user, options)
        contact = self._create_contact(session, actor_user, lead, account, options)
        self._link_primary_contact(session, account, contact)
        opportunity: CRMOpportunity | None = None
        if options.create_opportunity:
            opportunity = self._create_opportunity(session, actor_user, lead, account, contact, options)
        transferred = self._transfer_activities(session, lead, contact)
        try:
            self._mark_lead_converted(session, actor_user, lead, account, contact, opportunity)
        except ConversionError as exc:
            # A retry with the same key that lost the claim replays the winner.
            if exc.code == "already_converted" and idempotency_key:
                replayed = self._load_idempotent(session, endpoint, idempotency_key, request_hash)
                if replayed is not None:
                    session.rollback()
                    return replayed
            raise

        result = ConvertLeadResult(
            success=True,
            contact_id=contact.id,
            account_id=account.id,
            opportunity_id=opportunity.id if opportunity is not None else None,
        )
        if idempotency_key:
            session.add(
                CRMIdempotencyKey(
                    endpoint=endpoint,
                    key=idempotency_key,
                    request_hash=request_hash,
                    response_json=json.dumps(result.model_dump(mode="json")),
                )
            )

        session.commit()

        audit.record(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="convert",
            before={"is_converted": False, "lead_status": previous_status},
            after={
                "is_converted": True,
                "lead_status": "converted",
                "converted_account_id": str(account.id),
                "converted_contact_id": str(contact.id),
                "converted_opportunity_id": str(opportunity.id) if opportunity is not None else None,
                "account_option": options.account_option,
                "transferred_activities": transferred,
            },
        )
        events.publish(
            "crm.lead.converted",
            actor_user_id=actor_user.user_id,
            organization_id=lead.organization_id,
            payload={
                "lead_id": str(lead.id),
                "account_id": str(account.id),
                "contact_id": str(contact.id),
                "opportunity_id": str(opportunity.id) if opportunity is not None else None,
            },
            correlation_id=actor_user.correlation_id,
        )
        return result

    def _validate_options(self, options: ConvertLeadOptions) -> None:
        if options.account_option == "create":
            if options.existing_account_id is not None:
                raise ConversionError("validation_error", "existing_account_id must be empty when creating an account")
            if options.account_data is None or not options.account_data.name.strip():
                raise ConversionError("validation_error", "Account name is required")
        else:
            if options.account_data is not None:
                raise ConversionError("validation_error", "account_data must be empty when linking an existing account")
            if options.existing_account_id is None:
                raise ConversionError("validation_error", "Select an existing account")

        if not options.contact_data.first_name.strip() or not options.contact_data.last_name.strip():
            raise ConversionError("validation_error", "Contact first name and last name are required")

        if options.create_opportunity:
            if options.opportunity_data is None or not options.opportunity_data.name.strip():
                raise ConversionError("validation_error", "Opportunity name is required")

    def _load_convertible_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead:
        lead = self.lead_service._get_scoped_lead(session, actor_user, lead_id)
        if lead is None:
            raise ConversionError("not_found", "Lead not found")
        if lead.is_converted:
            raise ConversionError(
                "already_converted",
                "This lead has already been converted",
                existing_contact_id=lead.converted_contact_id,
            )
        return lead

    def _resolve_account(self, session: Session, actor_user: ActorUser, options: ConvertLeadOptions) -> CRMAccount:
        if options.account_option == "existing":
            account = session.scalar(
                select(CRMAccount).where(
                    and_(
                        CRMAccount.id == options.existing_account_id,
                        CRMAccount.organization_id == actor_user.organization_id,
                    )
                )
            )
            if account is None:
                raise ConversionError("not_found", "Selected account not found")
            return account

        if options.account_data is None:
            raise ConversionError("validation_error", "Account name is required")
        account = CRMAccount(
            organization_id=actor_user.organization_id,
            owner_id=actor_user.user_id,
            name=options.account_data.name.strip(),
            account_type=options.account_data.account_type,
            account_status=options.account_data.account_status,
        )
        session.add(account)
        session.flush()
        return account

    def _create_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount,
        options: ConvertLeadOptions,
    ) -> CRMContact:
        values: dict[str, Any] = map_lead_to_contact(lead).model_dump()
        contact_data = options.contact_data
        # Wizard edits win; attribution always comes from the lead.
        for field_name in contact_data.model_fields_set:
            values[field_name] = getattr(contact_data, field_name)
        for field_name in ATTRIBUTION_FIELDS:
            values[field_name] = getattr(lead, field_name)
        values["first_name"] = values["first_name"].strip()
        values["last_name"] = values["last_name"].strip()
        if values.get("email") is not None:
            values["email"] = str(values["email"])

        contact = CRMContact(
            organization_id=actor_user.organization_id,
            owner_id=actor_user.user_id,
            account_id=account.id,
            is_active=True,
            **values,
        )
        session.add(contact)
        session.flush()
        return contact

    def _link_primary_contact(self, session: Session, account: CRMAccount, contact: CRMContact) -> None:
        session.add(
            CRMContactAccountRelationship(
                contact_id=contact.id,
                account_id=account.id,
                relationship_type="primary",
                is_primary=True,
            )
        )
        if account.primary_contact_id is None:
            account.primary_contact_id = contact.id
            account.updated_at = utcnow()
        session.flush()

    def _create_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount,
        contact: CRMContact,
        options: ConvertLeadOptions,
    ) -> CRMOpportunity:
        data = options.opportunity_data
        if data is None:
            raise ConversionError("validation_error", "Opportunity name is required")
        amount = data.amount if data.amount is not None else default_opportunity_amount(lead)
        opportunity = CRMOpportunity(
            organization_id=actor_user.organization_id,
            owner_id=actor_user.user_id,
            name=data.name.strip(),
            account_id=account.id,
            primary_contact_id=contact.id,
            stage=data.stage,
            stage_probability=stage_probability(data.stage),
            amount=amount,
            close_date=data.close_date or lead.expected_close_date,
            service_type=data.service_type or lead.service_interest,
            is_closed=False,
            is_won=False,
        )
        session.add(opportunity)
        session.flush()
        return opportunity

    def _transfer_activities(self, session: Session, lead: CRMLead, contact: CRMContact) -> int:
        result = session.execute(
            update(CRMActivity)
            .where(
                and_(
                    CRMActivity.organization_id == lead.organization_id,
                    CRMActivity.who_type == "Lead",
                    CRMActivity.who_id == lead.id,
                )
            )
            .values(who_type="Contact", who_id=contact.id, updated_at=utcnow())
        )
        return int(result.rowcount or 0)

    def _mark_lead_converted(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount,
        contact: CRMContact,
        opportunity: CRMOpportunity | None,
    ) -> None:
        now = utcnow()
        result = session.execute(
            update(CRMLead)
            .where(
                and_(
                    CRMLead.id == lead.id,
                    CRMLead.organization_id == lead.organization_id,
                    CRMLead.is_converted.is_(False),
                )
            )
            .values(
                is_converted=True,
                converted_at=now,
                converted_contact_id=contact.id,
                converted_account_id=account.id,
                converted_opportunity_id=opportunity.id if opportunity is not None else None,
                converted_by=actor_user.user_id,
                lead_status="converted",
                updated_at=now,
                row_version=CRMLead.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            winner_contact_id = session.scalar(
                select(CRMLead.converted_contact_id).where(
                    and_(CRMLead.id == lead.id, CRMLead.organization_id == lead.organization_id)
                )
            )
            raise ConversionError(
                "already_converted",
                "This lead has already been converted",
                existing_contact_id=winner_contact_id,
            )

    def _load_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str,
        request_hash: str,
    ) -> ConvertLeadResult | None:
        existing_key = session.scalar(
            select(CRMIdempotencyKey).where(
                and_(CRMIdempotencyKey.endpoint == endpoint, CRMIdempotencyKey.key == key)
            )
        )
        if existing_key is None:
            return None
        if existing_key.request_hash != request_hash:
            raise ConversionError("idempotency_conflict", "Idempotency key was used with a different payload")
        return ConvertLeadResult.model_validate(json.loads(existing_key.response_json))
