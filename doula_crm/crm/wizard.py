"""Step-by-step builder for a lead conversion.

The wizard buffers every choice in one ``ConversionDraft`` and only talks to
the executor once, from the review step. Moving back never clears the draft.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import ValidationError

from doula_crm.crm.schemas import (
    AccountOption,
    AccountSearchResponse,
    AccountSearchResult,
    ConversionAccountData,
    ConversionContactData,
    ConversionOpportunityData,
    ConversionPreview,
    ConvertLeadOptions,
    ConvertLeadResult,
)


class WizardStep(str, Enum):
    ACCOUNT = "account"
    CONTACT = "contact"
    OPPORTUNITY = "opportunity"
    REVIEW = "review"


STEPS: tuple[WizardStep, ...] = (
    WizardStep.ACCOUNT,
    WizardStep.CONTACT,
    WizardStep.OPPORTUNITY,
    WizardStep.REVIEW,
)

AccountSearch = Callable[[str], AccountSearchResponse]
ConvertExecutor = Callable[[ConvertLeadOptions], ConvertLeadResult]


class WizardError(Exception):
    pass


@dataclass
class ConversionDraft:
    lead_id: uuid.UUID
    account_option: AccountOption = "create"
    account_name: str = ""
    account_type: str = "household"
    account_status: str = "prospect"
    selected_account: AccountSearchResult | None = None
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    expected_due_date: date | None = None
    create_opportunity: bool = True
    opportunity_name: str = ""
    opportunity_stage: str = "qualification"
    opportunity_amount: Decimal | None = None
    opportunity_close_date: date | None = None
    opportunity_service_type: str | None = None

    @classmethod
    def from_preview(cls, preview: ConversionPreview) -> ConversionDraft:
        lead = preview.lead
        contact = preview.mapped_contact_data
        return cls(
            lead_id=lead.id,
            account_name=preview.mapped_account_data.name,
            account_type=preview.mapped_account_data.account_type,
            account_status=preview.mapped_account_data.account_status,
            first_name=contact.first_name,
            last_name=contact.last_name,
            email=contact.email or "",
            phone=contact.phone or "",
            expected_due_date=contact.expected_due_date,
            create_opportunity=True,
            opportunity_name=preview.suggested_opportunity_name,
            opportunity_amount=lead.estimated_value,
            opportunity_close_date=lead.expected_close_date,
            opportunity_service_type=lead.service_interest,
        )


def is_step_valid(step: WizardStep, draft: ConversionDraft) -> bool:
    if step is WizardStep.ACCOUNT:
        if draft.account_option == "create":
            return bool(draft.account_name.strip())
        return draft.selected_account is not None
    if step is WizardStep.CONTACT:
        return bool(draft.first_name.strip()) and bool(draft.last_name.strip())
    if step is WizardStep.OPPORTUNITY:
        return not draft.create_opportunity or bool(draft.opportunity_name.strip())
    return True


class ConversionWizard:
    def __init__(self, draft: ConversionDraft) -> None:
        self.draft = draft
        self.step = WizardStep.ACCOUNT
        self.result: ConvertLeadResult | None = None

    @classmethod
    def from_preview(cls, preview: ConversionPreview) -> ConversionWizard:
        return cls(ConversionDraft.from_preview(preview))

    @property
    def step_index(self) -> int:
        return STEPS.index(self.step)

    def can_advance(self) -> bool:
        return self.step is not WizardStep.REVIEW and is_step_valid(self.step, self.draft)

    def next(self) -> WizardStep:
        if not self.can_advance():
            raise WizardError(f"step '{self.step.value}' is not complete")
        self.step = STEPS[self.step_index + 1]
        return self.step

    def back(self) -> WizardStep:
        if self.step_index > 0:
            self.step = STEPS[self.step_index - 1]
        return self.step

    def go_to(self, step: WizardStep) -> WizardStep:
        if STEPS.index(step) > self.step_index:
            raise WizardError("cannot skip ahead")
        self.step = step
        return self.step

    def select_account(self, account: AccountSearchResult) -> None:
        self.draft.account_option = "existing"
        self.draft.selected_account = account

    def clear_account(self) -> None:
        self.draft.selected_account = None

    def search_accounts(self, search: AccountSearch, term: str) -> list[AccountSearchResult]:
        response = search(term)
        # A failed search reads as no matches.
        if response.error is not None or response.data is None:
            return []
        return response.data

    def build_options(self) -> ConvertLeadOptions:
        draft = self.draft
        account_data = None
        existing_account_id = None
        if draft.account_option == "create":
            account_data = ConversionAccountData(
                name=draft.account_name.strip(),
                account_type=draft.account_type,
                account_status=draft.account_status,
            )
        elif draft.selected_account is not None:
            existing_account_id = draft.selected_account.id

        opportunity_data = None
        if draft.create_opportunity:
            opportunity_data = ConversionOpportunityData(
                name=draft.opportunity_name.strip(),
                stage=draft.opportunity_stage,
                amount=draft.opportunity_amount,
                close_date=draft.opportunity_close_date,
                service_type=draft.opportunity_service_type,
            )

        return ConvertLeadOptions(
            lead_id=draft.lead_id,
            account_option=draft.account_option,
            existing_account_id=existing_account_id,
            account_data=account_data,
            contact_data=ConversionContactData(
                first_name=draft.first_name.strip(),
                last_name=draft.last_name.strip(),
                email=draft.email.strip() or None,
                phone=draft.phone.strip() or None,
                expected_due_date=draft.expected_due_date,
            ),
            create_opportunity=draft.create_opportunity,
            opportunity_data=opportunity_data,
        )

    def submit(self, executor: ConvertExecutor) -> ConvertLeadResult:
        if self.step is not WizardStep.REVIEW:
            raise WizardError("conversion can only be submitted from the review step")
        invalid = [step.value for step in STEPS if not is_step_valid(step, self.draft)]
        if invalid:
            self.result = ConvertLeadResult(
                success=False,
                error=f"Incomplete steps: {', '.join(invalid)}",
                error_code="validation_error",
            )
            return self.result

        try:
            options = self.build_options()
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            self.result = ConvertLeadResult(
                success=False,
                error=f"{location}: {first.get('msg')}" if location else str(first.get("msg")),
                error_code="validation_error",
            )
            return self.result

        self.result = executor(options)
        return self.result
