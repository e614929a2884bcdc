"""Lead field projections used to pre-fill a conversion.

Everything here is a suggestion: the caller may override every value before
the conversion runs, and nothing in this module touches the database.
"""

from __future__ import annotations

from decimal import Decimal

from doula_crm.core.config import get_settings
from doula_crm.crm.models import CRMLead
from doula_crm.crm.schemas import ConversionAccountData, MappedContactData


STAGE_PROBABILITIES: dict[str, int] = {
    "qualification": 10,
    "needs_analysis": 25,
    "proposal": 50,
    "negotiation": 75,
    "closed_won": 100,
    "closed_lost": 0,
}

ATTRIBUTION_FIELDS = ("lead_source", "referral_partner_id", "utm_source", "utm_medium", "utm_campaign")


def _full_name(lead: CRMLead) -> str:
    return f"{lead.first_name or ''} {lead.last_name or ''}".strip()


def map_lead_to_contact(lead: CRMLead) -> MappedContactData:
    return MappedContactData(
        first_name=lead.first_name,
        last_name=lead.last_name,
        email=lead.email,
        phone=lead.phone,
        expected_due_date=lead.expected_due_date,
        lead_source=lead.lead_source,
        referral_partner_id=lead.referral_partner_id,
        utm_source=lead.utm_source,
        utm_medium=lead.utm_medium,
        utm_campaign=lead.utm_campaign,
        custom_fields=dict(lead.custom_fields or {}),
    )


def map_lead_to_account(lead: CRMLead) -> ConversionAccountData:
    """Accounts are households, so the default name is "The <LastName> Family"."""
    last_name = (lead.last_name or "").strip()
    name = f"The {last_name} Family" if last_name else _full_name(lead)
    return ConversionAccountData(name=name, account_type="household", account_status="prospect")


def generate_opportunity_name(lead: CRMLead, service_type: str | None = None) -> str:
    service = service_type or lead.service_interest or get_settings().default_service_interest
    return f"{_full_name(lead)} - {service}"


def default_opportunity_amount(lead: CRMLead) -> Decimal | None:
    if lead.estimated_value is None:
        return None
    return Decimal(lead.estimated_value)


def stage_probability(stage: str) -> int:
    return STAGE_PROBABILITIES.get(stage, STAGE_PROBABILITIES["qualification"])
