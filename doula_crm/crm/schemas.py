from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


LeadStatus = Literal["new", "contacted", "qualified", "unqualified", "converted"]
LeadRating = Literal["hot", "warm", "cold"]
AccountType = Literal["household", "business", "partner"]
AccountStatus = Literal["prospect", "active", "inactive", "churned"]
OpportunityStage = Literal["qualification", "needs_analysis", "proposal", "negotiation", "closed_won", "closed_lost"]
OpenOpportunityStage = Literal["qualification", "needs_analysis", "proposal", "negotiation"]
AccountOption = Literal["create", "existing"]
ActivityType = Literal["task", "event", "call", "email", "note"]
WhoType = Literal["Lead", "Contact"]
ConversionErrorCode = Literal[
    "not_found",
    "already_converted",
    "validation_error",
    "store_error",
    "idempotency_conflict",
]


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    lead_status: LeadStatus = "new"
    lead_source: str | None = None
    lead_rating: LeadRating | None = None
    service_interest: str | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    expected_due_date: date | None = None
    message: str | None = None
    referral_partner_id: UUID | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    landing_page: str | None = None
    referrer_url: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class LeadUpdate(BaseModel):
    row_version: int = Field(ge=1)
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    lead_status: LeadStatus | None = None
    lead_source: str | None = None
    lead_rating: LeadRating | None = None
    service_interest: str | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    expected_due_date: date | None = None
    message: str | None = None
    custom_fields: dict[str, Any] | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    owner_id: str | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    lead_status: str
    lead_source: str | None
    lead_rating: str | None
    service_interest: str | None
    estimated_value: Decimal | None
    expected_close_date: date | None
    expected_due_date: date | None
    message: str | None
    referral_partner_id: UUID | None
    utm_source: str | None
    utm_medium: str | None
    utm_campaign: str | None
    landing_page: str | None
    referrer_url: str | None
    is_converted: bool
    converted_at: datetime | None
    converted_contact_id: UUID | None
    converted_account_id: UUID | None
    converted_opportunity_id: UUID | None
    converted_by: str | None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    row_version: int


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    owner_id: str | None
    name: str
    account_type: str
    account_status: str
    primary_contact_id: UUID | None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class AccountSearchResult(BaseModel):
    id: UUID
    name: str
    account_type: str
    account_status: str
    primary_contact_name: str | None = None


class AccountSearchResponse(BaseModel):
    data: list[AccountSearchResult] | None
    error: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    owner_id: str | None
    account_id: UUID | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    expected_due_date: date | None
    is_active: bool
    lead_source: str | None
    referral_partner_id: UUID | None
    utm_source: str | None
    utm_medium: str | None
    utm_campaign: str | None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    owner_id: str | None
    name: str
    description: str | None
    account_id: UUID | None
    primary_contact_id: UUID | None
    stage: str
    stage_probability: int
    amount: Decimal | None
    close_date: date | None
    service_type: str | None
    is_closed: bool
    is_won: bool
    created_at: datetime
    updated_at: datetime


class ActivityCreate(BaseModel):
    activity_type: ActivityType
    subject: str = Field(min_length=1)
    description: str | None = None
    who_type: WhoType
    who_id: UUID
    due_date: date | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    owner_id: str | None
    activity_type: str
    subject: str
    description: str | None
    status: str
    who_type: str | None
    who_id: UUID | None
    due_date: date | None
    created_at: datetime
    updated_at: datetime


class ConversionAccountData(BaseModel):
    name: str
    account_type: AccountType = "household"
    account_status: AccountStatus = "prospect"


class ConversionContactData(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr | None = None
    phone: str | None = None
    expected_due_date: date | None = None


class ConversionOpportunityData(BaseModel):
    name: str
    stage: OpenOpportunityStage = "qualification"
    amount: Decimal | None = Field(default=None, ge=0)
    close_date: date | None = None
    service_type: str | None = None


class ConvertLeadRequest(BaseModel):
    """Wizard choices for a lead conversion; the lead is addressed by the URL."""

    account_option: AccountOption
    existing_account_id: UUID | None = None
    account_data: ConversionAccountData | None = None
    contact_data: ConversionContactData
    create_opportunity: bool = False
    opportunity_data: ConversionOpportunityData | None = None


class ConvertLeadOptions(ConvertLeadRequest):
    lead_id: UUID


class ConvertLeadResult(BaseModel):
    success: bool
    contact_id: UUID | None = None
    account_id: UUID | None = None
    opportunity_id: UUID | None = None
    error: str | None = None
    error_code: ConversionErrorCode | None = None
    existing_contact_id: UUID | None = None


class MappedContactData(BaseModel):
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    expected_due_date: date | None = None
    lead_source: str | None = None
    referral_partner_id: UUID | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class ConversionPreview(BaseModel):
    lead: LeadRead
    mapped_contact_data: MappedContactData
    mapped_account_data: ConversionAccountData
    suggested_opportunity_name: str


class ConversionPreviewResponse(BaseModel):
    data: ConversionPreview | None
    error: str | None = None
    error_code: ConversionErrorCode | None = None


class LeadValidation(BaseModel):
    valid: bool
    lead: LeadRead | None = None
    error: str | None = None
    error_code: ConversionErrorCode | None = None
