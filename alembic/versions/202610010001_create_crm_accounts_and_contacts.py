"""create crm accounts and contacts

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("account_type", sa.String(length=32), nullable=False, server_default="household"),
        sa.Column("account_status", sa.String(length=32), nullable=False, server_default="prospect"),
        sa.Column("primary_contact_id", sa.Uuid(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_accounts_organization_name", "crm_accounts", ["organization_id", "name"], unique=False)

    op.create_table(
        "crm_contacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("expected_due_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("lead_source", sa.String(length=64), nullable=True),
        sa.Column("referral_partner_id", sa.Uuid(), nullable=True),
        sa.Column("utm_source", sa.Text(), nullable=True),
        sa.Column("utm_medium", sa.Text(), nullable=True),
        sa.Column("utm_campaign", sa.Text(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["crm_accounts.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contacts_account_id", "crm_contacts", ["account_id"], unique=False)

    op.create_foreign_key(
        "fk_crm_accounts_primary_contact",
        "crm_accounts",
        "crm_contacts",
        ["primary_contact_id"],
        ["id"],
        ondelete="SET NULL",
    )

    op.create_table(
        "contact_account_relationships",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("relationship_type", sa.String(length=32), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["account_id"], ["crm_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contact_id", "account_id", name="uq_contact_account_relationship_pair"),
    )


def downgrade() -> None:
    op.drop_table("contact_account_relationships")
    op.drop_constraint("fk_crm_accounts_primary_contact", "crm_accounts", type_="foreignkey")
    op.drop_index("ix_crm_contacts_account_id", table_name="crm_contacts")
    op.drop_table("crm_contacts")
    op.drop_index("ix_crm_accounts_organization_name", table_name="crm_accounts")
    op.drop_table("crm_accounts")
