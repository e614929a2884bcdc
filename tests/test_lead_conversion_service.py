from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from doula_crm import audit, events
from doula_crm.core.database import Base
from doula_crm.crm.models import (
    CRMAccount,
    CRMActivity,
    CRMContact,
    CRMContactAccountRelationship,
    CRMIdempotencyKey,
    CRMLead,
    CRMOpportunity,
)
from doula_crm.crm.schemas import ConvertLeadOptions, ConvertLeadResult
from doula_crm.crm.service import ActorUser, LeadConversionService, idempotency_endpoint, options_hash


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def organizations() -> dict[str, uuid.UUID]:
    return {"org1": uuid.uuid4(), "org2": uuid.uuid4()}


@pytest.fixture()
def actor(organizations: dict[str, uuid.UUID]) -> ActorUser:
    return ActorUser(
        user_id="user-1",
        organization_id=organizations["org1"],
        permissions={"crm.leads.convert"},
        correlation_id="corr-convert",
    )


@pytest.fixture()
def service() -> LeadConversionService:
    return LeadConversionService()


def _make_lead(session: Session, organization_id: uuid.UUID, **overrides: Any) -> CRMLead:
    values: dict[str, Any] = {
        "organization_id": organization_id,
        "owner_id": "user-1",
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane@example.com",
        "phone": "+1-555-0100",
        "lead_status": "qualified",
        "lead_source": "website",
        "service_interest": "Birth Doula",
        "estimated_value": Decimal("1500.00"),
        "expected_close_date": date(2026, 12, 1),
        "expected_due_date": date(2027, 1, 15),
        "utm_source": "google",
        "utm_medium": "cpc",
        "utm_campaign": "fall",
        "custom_fields": {"birth_plan": "home"},
    }
    values.update(overrides)
    lead = CRMLead(**values)
    session.add(lead)
    session.commit()
    return lead


def _make_account(session: Session, organization_id: uuid.UUID, name: str = "The Doe Family") -> CRMAccount:
    account = CRMAccount(organization_id=organization_id, owner_id="user-1", name=name)
    session.add(account)
    session.commit()
    return account


def _count(session: Session, model: type) -> int:
    return int(session.scalar(select(func.count()).select_from(model)) or 0)


def _create_options(lead_id: uuid.UUID, **overrides: Any) -> ConvertLeadOptions:
    payload: dict[str, Any] = {
        "lead_id": lead_id,
        "account_option": "create",
        "account_data": {"name": "Doe Family"},
        "contact_data": {"first_name": "Jane", "last_name": "Doe", "email": "jane@example.com"},
        "create_opportunity": True,
        "opportunity_data": {"name": "Doe Birth Package", "stage": "qualification"},
    }
    payload.update(overrides)
    return ConvertLeadOptions.model_validate(payload)


def test_convert_with_new_account_creates_account_contact_and_opportunity(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(db_session, actor, _create_options(lead.id))

    assert result.success is True
    assert result.error is None
    assert _count(db_session, CRMAccount) == 1
    assert _count(db_session, CRMContact) == 1
    assert _count(db_session, CRMOpportunity) == 1

    account = db_session.get(CRMAccount, result.account_id)
    contact = db_session.get(CRMContact, result.contact_id)
    opportunity = db_session.get(CRMOpportunity, result.opportunity_id)
    assert account is not None and contact is not None and opportunity is not None

    assert account.name == "Doe Family"
    assert account.account_type == "household"
    assert account.account_status == "prospect"
    assert account.primary_contact_id == contact.id

    assert (contact.first_name, contact.last_name) == ("Jane", "Doe")
    assert contact.account_id == account.id
    assert contact.is_active is True

    assert opportunity.name == "Doe Birth Package"
    assert opportunity.stage == "qualification"
    assert opportunity.stage_probability == 10
    assert opportunity.account_id == account.id
    assert opportunity.primary_contact_id == contact.id

    db_session.refresh(lead)
    assert lead.is_converted is True
    assert lead.lead_status == "converted"
    assert lead.converted_at is not None
    assert lead.converted_by == "user-1"
    assert lead.converted_contact_id == contact.id
    assert lead.converted_account_id == account.id
    assert lead.converted_opportunity_id == opportunity.id
    assert lead.row_version == 2


def test_convert_with_existing_account_creates_no_account_and_no_opportunity(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    existing = _make_account(db_session, actor.organization_id)

    result = service.convert_lead(
        db_session,
        actor,
        _create_options(
            lead.id,
            account_option="existing",
            account_data=None,
            existing_account_id=existing.id,
            create_opportunity=False,
            opportunity_data=None,
        ),
    )

    assert result.success is True
    assert result.account_id == existing.id
    assert result.opportunity_id is None
    assert _count(db_session, CRMAccount) == 1
    assert _count(db_session, CRMOpportunity) == 0

    contact = db_session.get(CRMContact, result.contact_id)
    assert contact is not None
    assert contact.account_id == existing.id

    db_session.refresh(lead)
    assert lead.is_converted is True
    assert lead.converted_opportunity_id is None


def test_existing_account_keeps_its_primary_contact(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    existing = _make_account(db_session, actor.organization_id)
    first_lead = _make_lead(db_session, actor.organization_id, first_name="John")
    first = service.convert_lead(
        db_session,
        actor,
        _create_options(
            first_lead.id,
            account_option="existing",
            account_data=None,
            existing_account_id=existing.id,
            contact_data={"first_name": "John", "last_name": "Doe"},
            create_opportunity=False,
        ),
    )
    assert first.success is True

    second_lead = _make_lead(db_session, actor.organization_id)
    second = service.convert_lead(
        db_session,
        actor,
        _create_options(
            second_lead.id,
            account_option="existing",
            account_data=None,
            existing_account_id=existing.id,
            create_opportunity=False,
        ),
    )
    assert second.success is True

    db_session.refresh(existing)
    assert existing.primary_contact_id == first.contact_id
    relationships = db_session.scalars(
        select(CRMContactAccountRelationship).where(CRMContactAccountRelationship.account_id == existing.id)
    ).all()
    assert {item.contact_id for item in relationships} == {first.contact_id, second.contact_id}
    assert all(item.is_primary for item in relationships)


def test_second_conversion_is_rejected_and_creates_nothing(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    first = service.convert_lead(db_session, actor, _create_options(lead.id))
    assert first.success is True

    second = service.convert_lead(db_session, actor, _create_options(lead.id))

    assert second.success is False
    assert second.error_code == "already_converted"
    assert second.existing_contact_id == first.contact_id
    assert _count(db_session, CRMAccount) == 1
    assert _count(db_session, CRMContact) == 1
    assert _count(db_session, CRMOpportunity) == 1


def test_converted_leads_reference_existing_contacts(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    for first_name in ("Ann", "Bea", "Cat"):
        lead = _make_lead(db_session, actor.organization_id, first_name=first_name)
        assert service.convert_lead(
            db_session,
            actor,
            _create_options(lead.id, contact_data={"first_name": first_name, "last_name": "Doe"}),
        ).success

    converted = db_session.scalars(select(CRMLead).where(CRMLead.is_converted.is_(True))).all()
    assert len(converted) == 3
    for lead in converted:
        assert lead.converted_contact_id is not None
        assert db_session.get(CRMContact, lead.converted_contact_id) is not None


def test_missing_lead_returns_not_found(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    result = service.convert_lead(db_session, actor, _create_options(uuid.uuid4()))

    assert result.success is False
    assert result.error_code == "not_found"
    assert result.error == "Lead not found"


def test_lead_in_another_organization_is_not_found(
    db_session: Session,
    actor: ActorUser,
    organizations: dict[str, uuid.UUID],
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, organizations["org2"])

    result = service.convert_lead(db_session, actor, _create_options(lead.id))

    assert result.error_code == "not_found"
    db_session.refresh(lead)
    assert lead.is_converted is False


def test_existing_account_from_another_organization_is_not_found(
    db_session: Session,
    actor: ActorUser,
    organizations: dict[str, uuid.UUID],
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    foreign = _make_account(db_session, organizations["org2"])

    result = service.convert_lead(
        db_session,
        actor,
        _create_options(
            lead.id,
            account_option="existing",
            account_data=None,
            existing_account_id=foreign.id,
            create_opportunity=False,
        ),
    )

    assert result.error_code == "not_found"
    assert result.error == "Selected account not found"
    assert _count(db_session, CRMContact) == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"account_data": None},
        {"account_data": {"name": "   "}},
        {"account_option": "existing", "account_data": None},
        {"account_option": "existing", "existing_account_id": uuid.uuid4()},
        {"contact_data": {"first_name": "", "last_name": "Doe"}},
        {"contact_data": {"first_name": "Jane", "last_name": "  "}},
        {"opportunity_data": None},
        {"opportunity_data": {"name": ""}},
    ],
)
def test_invalid_options_are_rejected_before_any_write(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
    overrides: dict[str, Any],
) -> None:
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(db_session, actor, _create_options(lead.id, **overrides))

    assert result.success is False
    assert result.error_code == "validation_error"
    assert _count(db_session, CRMAccount) == 0
    assert _count(db_session, CRMContact) == 0
    db_session.refresh(lead)
    assert lead.is_converted is False


def test_opportunity_data_is_ignored_when_not_requested(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(db_session, actor, _create_options(lead.id, create_opportunity=False))

    assert result.success is True
    assert result.opportunity_id is None
    assert _count(db_session, CRMOpportunity) == 0


def test_opportunity_defaults_come_from_the_lead(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(
        db_session,
        actor,
        _create_options(lead.id, opportunity_data={"name": "Doe Birth Package", "stage": "proposal"}),
    )

    opportunity = db_session.get(CRMOpportunity, result.opportunity_id)
    assert opportunity is not None
    assert opportunity.amount == Decimal("1500.00")
    assert opportunity.service_type == "Birth Doula"
    assert opportunity.close_date == date(2026, 12, 1)
    assert opportunity.stage == "proposal"
    assert opportunity.stage_probability == 50
    assert opportunity.is_closed is False
    assert opportunity.is_won is False


def test_contact_copies_attribution_and_applies_overrides(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    partner_id = uuid.uuid4()
    lead = _make_lead(db_session, actor.organization_id, referral_partner_id=partner_id)

    result = service.convert_lead(
        db_session,
        actor,
        _create_options(
            lead.id,
            contact_data={"first_name": " Janet ", "last_name": "Doe", "phone": "+1-555-0199"},
            create_opportunity=False,
        ),
    )

    contact = db_session.get(CRMContact, result.contact_id)
    assert contact is not None
    assert contact.first_name == "Janet"
    assert contact.phone == "+1-555-0199"
    assert contact.email == "jane@example.com"
    assert contact.expected_due_date == date(2027, 1, 15)
    assert contact.lead_source == "website"
    assert contact.referral_partner_id == partner_id
    assert (contact.utm_source, contact.utm_medium, contact.utm_campaign) == ("google", "cpc", "fall")
    assert contact.custom_fields == {"birth_plan": "home"}


def test_explicit_empty_email_override_clears_it(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(
        db_session,
        actor,
        _create_options(
            lead.id,
            contact_data={"first_name": "Jane", "last_name": "Doe", "email": None},
            create_opportunity=False,
        ),
    )

    contact = db_session.get(CRMContact, result.contact_id)
    assert contact is not None
    assert contact.email is None


def test_lead_activities_move_to_the_new_contact(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    other_lead = _make_lead(db_session, actor.organization_id, first_name="Other")
    for subject in ("Intro call", "Send pricing"):
        db_session.add(
            CRMActivity(
                organization_id=actor.organization_id,
                activity_type="call",
                subject=subject,
                who_type="Lead",
                who_id=lead.id,
            )
        )
    db_session.add(
        CRMActivity(
            organization_id=actor.organization_id,
            activity_type="note",
            subject="Untouched",
            who_type="Lead",
            who_id=other_lead.id,
        )
    )
    db_session.commit()

    result = service.convert_lead(db_session, actor, _create_options(lead.id, create_opportunity=False))
    assert result.success is True

    moved = db_session.scalars(select(CRMActivity).where(CRMActivity.who_type == "Contact")).all()
    assert {item.subject for item in moved} == {"Intro call", "Send pricing"}
    assert all(item.who_id == result.contact_id for item in moved)
    untouched = db_session.scalar(select(CRMActivity).where(CRMActivity.subject == "Untouched"))
    assert untouched is not None
    assert untouched.who_type == "Lead"
    assert untouched.who_id == other_lead.id


def test_losing_the_conversion_race_rolls_back_every_write(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    winner_contact_id = uuid.uuid4()
    original_transfer = service._transfer_activities

    def transfer_after_concurrent_conversion(session: Session, lead_row: CRMLead, contact: CRMContact) -> int:
        session.execute(
            update(CRMLead)
            .where(CRMLead.id == lead_row.id)
            .values(is_converted=True, converted_contact_id=winner_contact_id)
            .execution_options(synchronize_session=False)
        )
        return original_transfer(session, lead_row, contact)

    monkeypatch.setattr(service, "_transfer_activities", transfer_after_concurrent_conversion)

    result = service.convert_lead(db_session, actor, _create_options(lead.id))

    assert result.success is False
    assert result.error_code == "already_converted"
    assert result.existing_contact_id == winner_contact_id
    assert _count(db_session, CRMAccount) == 0
    assert _count(db_session, CRMContact) == 0
    assert _count(db_session, CRMOpportunity) == 0
    assert _count(db_session, CRMContactAccountRelationship) == 0


def test_store_failure_after_account_insert_leaves_no_orphan_account(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead = _make_lead(db_session, actor.organization_id)

    def failing_create_contact(*args: Any, **kwargs: Any) -> CRMContact:
        raise SQLAlchemyError("insert into crm_contacts failed")

    monkeypatch.setattr(service, "_create_contact", failing_create_contact)

    result = service.convert_lead(db_session, actor, _create_options(lead.id))

    assert result.success is False
    assert result.error_code == "store_error"
    assert result.error == "Failed to convert lead"
    assert _count(db_session, CRMAccount) == 0
    db_session.refresh(lead)
    assert lead.is_converted is False
    assert any(
        record.name == "doula_crm.crm.conversion" and record.getMessage() == "lead.convert.store_error"
        for record in caplog.records
    )
    assert not any(event["event_type"] == "crm.lead.converted" for event in events.published_events)


def test_idempotency_key_replays_the_first_result(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    options = _create_options(lead.id)

    first = service.convert_lead(db_session, actor, options, idempotency_key="conv-1")
    second = service.convert_lead(db_session, actor, options, idempotency_key="conv-1")

    assert first.success is True
    assert second == first
    assert _count(db_session, CRMAccount) == 1
    assert _count(db_session, CRMContact) == 1


def test_idempotency_key_with_different_payload_conflicts(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    first = service.convert_lead(db_session, actor, _create_options(lead.id), idempotency_key="conv-2")
    assert first.success is True

    second = service.convert_lead(
        db_session,
        actor,
        _create_options(lead.id, account_data={"name": "Another Family"}),
        idempotency_key="conv-2",
    )

    assert second.success is False
    assert second.error_code == "idempotency_conflict"


def test_retry_that_loses_the_claim_replays_the_stored_result(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    options = _create_options(lead.id)
    winner = ConvertLeadResult(success=True, contact_id=uuid.uuid4(), account_id=uuid.uuid4())
    original_transfer = service._transfer_activities

    def transfer_after_first_request_committed(session: Session, lead_row: CRMLead, contact: CRMContact) -> int:
        session.execute(
            update(CRMLead)
            .where(CRMLead.id == lead_row.id)
            .values(is_converted=True, converted_contact_id=winner.contact_id)
            .execution_options(synchronize_session=False)
        )
        session.add(
            CRMIdempotencyKey(
                endpoint=idempotency_endpoint(actor, lead_row.id),
                key="retry-1",
                request_hash=options_hash(options),
                response_json=winner.model_dump_json(),
            )
        )
        session.flush()
        return original_transfer(session, lead_row, contact)

    monkeypatch.setattr(service, "_transfer_activities", transfer_after_first_request_committed)

    result = service.convert_lead(db_session, actor, options, idempotency_key="retry-1")

    assert result.success is True
    assert result.contact_id == winner.contact_id
    assert result.account_id == winner.account_id
    assert _count(db_session, CRMAccount) == 0
    assert _count(db_session, CRMContact) == 0


def test_idempotency_key_is_not_replayed_across_organizations(
    db_session: Session,
    actor: ActorUser,
    organizations: dict[str, uuid.UUID],
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)
    options = _create_options(lead.id)
    first = service.convert_lead(db_session, actor, options, idempotency_key="shared-key")
    assert first.success is True

    outsider = ActorUser(
        user_id="user-2",
        organization_id=organizations["org2"],
        permissions={"crm.leads.convert"},
        correlation_id="corr-outsider",
    )
    second = service.convert_lead(db_session, outsider, options, idempotency_key="shared-key")

    assert second.success is False
    assert second.error_code == "not_found"
    assert second.contact_id is None
    assert second.account_id is None


def test_conversion_is_audited_and_published(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
) -> None:
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(db_session, actor, _create_options(lead.id))

    convert_audits = [entry for entry in audit.audit_entries if entry["action"] == "convert"]
    assert len(convert_audits) == 1
    assert convert_audits[0]["entity_id"] == str(lead.id)
    assert convert_audits[0]["correlation_id"] == "corr-convert"
    assert convert_audits[0]["after"]["converted_contact_id"] == str(result.contact_id)

    converted_events = [item for item in events.published_events if item["event_type"] == "crm.lead.converted"]
    assert len(converted_events) == 1
    assert converted_events[0]["payload"]["contact_id"] == str(result.contact_id)
    assert converted_events[0]["organization_id"] == str(actor.organization_id)


def test_conversion_logs_structured_outcome(
    db_session: Session,
    actor: ActorUser,
    service: LeadConversionService,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead = _make_lead(db_session, actor.organization_id)

    result = service.convert_lead(db_session, actor, _create_options(lead.id))
    service.convert_lead(db_session, actor, _create_options(lead.id))

    records = [record for record in caplog.records if record.name == "doula_crm.crm.conversion"]
    assert any(
        record.getMessage() == "lead.converted"
        and getattr(record, "lead_id", None) == str(lead.id)
        and getattr(record, "contact_id", None) == str(result.contact_id)
        and getattr(record, "account_option", None) == "create"
        for record in records
    )
    assert any(
        record.getMessage() == "lead.convert_failed" and getattr(record, "error_code", None) == "already_converted"
        for record in records
    )
