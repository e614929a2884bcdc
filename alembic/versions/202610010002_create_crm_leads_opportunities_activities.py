"""create crm leads, opportunities and activities

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_opportunities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("primary_contact_id", sa.Uuid(), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("stage_probability", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("close_date", sa.Date(), nullable=True),
        sa.Column("service_type", sa.Text(), nullable=True),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_won", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["crm_accounts.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["primary_contact_id"], ["crm_contacts.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_leads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("lead_status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("lead_source", sa.String(length=64), nullable=True),
        sa.Column("lead_rating", sa.String(length=16), nullable=True),
        sa.Column("service_interest", sa.Text(), nullable=True),
        sa.Column("estimated_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("expected_due_date", sa.Date(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("referral_partner_id", sa.Uuid(), nullable=True),
        sa.Column("utm_source", sa.Text(), nullable=True),
        sa.Column("utm_medium", sa.Text(), nullable=True),
        sa.Column("utm_campaign", sa.Text(), nullable=True),
        sa.Column("landing_page", sa.Text(), nullable=True),
        sa.Column("referrer_url", sa.Text(), nullable=True),
        sa.Column("is_converted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_contact_id", sa.Uuid(), nullable=True),
        sa.Column("converted_account_id", sa.Uuid(), nullable=True),
        sa.Column("converted_opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("converted_by", sa.String(length=128), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["converted_contact_id"], ["crm_contacts.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["converted_account_id"], ["crm_accounts.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["converted_opportunity_id"], ["crm_opportunities.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_leads_scope_filter",
        "crm_leads",
        ["organization_id", "lead_status", "is_converted", "created_at"],
        unique=False,
    )
    op.create_index("ix_crm_leads_email", "crm_leads", ["email"], unique=False)

    op.create_table(
        "crm_activities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("activity_type", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("who_type", sa.String(length=32), nullable=True),
        sa.Column("who_id", sa.Uuid(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_activities_who", "crm_activities", ["who_type", "who_id"], unique=False)

    op.create_table(
        "crm_idempotency_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("endpoint", sa.String(length=128), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("endpoint", "key", name="uq_crm_idempotency_endpoint_key"),
    )


def downgrade() -> None:
    op.drop_table("crm_idempotency_keys")
    op.drop_index("ix_crm_activities_who", table_name="crm_activities")
    op.drop_table("crm_activities")
    op.drop_index("ix_crm_leads_email", table_name="crm_leads")
    op.drop_index("ix_crm_leads_scope_filter", table_name="crm_leads")
    op.drop_table("crm_leads")
    op.drop_table("crm_opportunities")
