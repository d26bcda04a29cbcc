"""create crm tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _tenant_columns() -> list[sa.Column]:
    return [
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=True),
    ]


def _timestamp_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_tenant_columns(),
        sa.Column("salutation", sa.String(length=32), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("middle_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("lead_name", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("company_name", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Lead"),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("mobile_no", sa.String(length=32), nullable=True),
        sa.Column("territory", sa.String(length=64), nullable=True),
        sa.Column("industry", sa.String(length=64), nullable=True),
        sa.Column("lead_owner_id", sa.String(length=64), nullable=True),
        sa.Column("qualification_status", sa.String(length=32), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "email", name="uq_crm_lead_org_email"),
    )
    op.create_index("ix_crm_lead_org_id", "crm_lead", ["org_id"], unique=False)
    op.create_index("ix_crm_lead_tenant_created", "crm_lead", ["org_id", "company_id", "created_at"], unique=False)

    op.create_table(
        "crm_sales_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_tenant_columns(),
        sa.Column("stage_name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "stage_name", name="uq_crm_sales_stage_org_name"),
    )
    op.create_index("ix_crm_sales_stage_org_id", "crm_sales_stage", ["org_id"], unique=False)
    op.create_index(
        "ix_crm_sales_stage_tenant_created",
        "crm_sales_stage",
        ["org_id", "company_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_tenant_columns(),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("opportunity_from", sa.String(length=32), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("customer_name", sa.Text(), nullable=True),
        sa.Column("sales_stage_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Open"),
        sa.Column("currency", sa.String(length=16), nullable=False, server_default="USD"),
        sa.Column("conversion_rate", sa.Numeric(15, 4), nullable=False, server_default="1.0000"),
        sa.Column("probability", sa.Numeric(5, 2), nullable=True),
        sa.Column("expected_closing", sa.Date(), nullable=True),
        sa.Column("transaction_date", sa.Date(), nullable=True),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("contact_mobile", sa.String(length=32), nullable=True),
        sa.Column("territory", sa.String(length=64), nullable=True),
        sa.Column("opportunity_owner_id", sa.String(length=64), nullable=True),
        sa.Column("order_lost_reason", sa.Text(), nullable=True),
        sa.Column("total", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("base_total", sa.Numeric(15, 2), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        *_timestamp_columns(),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["sales_stage_id"], ["crm_sales_stage.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_org_id", "crm_opportunity", ["org_id"], unique=False)
    op.create_index(
        "ix_crm_opportunity_tenant_created",
        "crm_opportunity",
        ["org_id", "company_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_opportunity_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("idx", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("item_code", sa.String(length=64), nullable=True),
        sa.Column("item_name", sa.Text(), nullable=True),
        sa.Column("uom", sa.String(length=32), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("qty", sa.Numeric(15, 2), nullable=False),
        sa.Column("rate", sa.Numeric(15, 2), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("base_rate", sa.Numeric(15, 2), nullable=False),
        sa.Column("base_amount", sa.Numeric(15, 2), nullable=False),
        *_timestamp_columns(),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_opportunity_item_opportunity_id",
        "crm_opportunity_item",
        ["opportunity_id"],
        unique=False,
    )

    op.create_table(
        "crm_contract",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_tenant_columns(),
        sa.Column("party_type", sa.String(length=32), nullable=False, server_default="Customer"),
        sa.Column("party_name", sa.Text(), nullable=False),
        sa.Column("party_user_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Unsigned"),
        sa.Column("is_signed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("signee", sa.Text(), nullable=True),
        sa.Column("signed_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("contract_template", sa.String(length=128), nullable=True),
        sa.Column("contract_terms", sa.Text(), nullable=True),
        sa.Column("requires_fulfilment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fulfilment_deadline", sa.Date(), nullable=True),
        sa.Column("fulfilment_status", sa.String(length=32), nullable=False, server_default="N/A"),
        sa.Column("document_type", sa.String(length=64), nullable=True),
        sa.Column("document_name", sa.Text(), nullable=True),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        *_timestamp_columns(),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contract_org_id", "crm_contract", ["org_id"], unique=False)
    op.create_index(
        "ix_crm_contract_tenant_created",
        "crm_contract",
        ["org_id", "company_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_contract_fulfilment_checklist",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contract_id", sa.Uuid(), nullable=False),
        sa.Column("idx", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requirement", sa.Text(), nullable=False),
        sa.Column("fulfilled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamp_columns(),
        sa.ForeignKeyConstraint(["contract_id"], ["crm_contract.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_contract_fulfilment_checklist_contract_id",
        "crm_contract_fulfilment_checklist",
        ["contract_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_contract_fulfilment_checklist_contract_id", table_name="crm_contract_fulfilment_checklist")
    op.drop_table("crm_contract_fulfilment_checklist")
    op.drop_index("ix_crm_contract_tenant_created", table_name="crm_contract")
    op.drop_index("ix_crm_contract_org_id", table_name="crm_contract")
    op.drop_table("crm_contract")
    op.drop_index("ix_crm_opportunity_item_opportunity_id", table_name="crm_opportunity_item")
    op.drop_table("crm_opportunity_item")
    op.drop_index("ix_crm_opportunity_tenant_created", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_org_id", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
    op.drop_index("ix_crm_sales_stage_tenant_created", table_name="crm_sales_stage")
    op.drop_index("ix_crm_sales_stage_org_id", table_name="crm_sales_stage")
    op.drop_table("crm_sales_stage")
    op.drop_index("ix_crm_lead_tenant_created", table_name="crm_lead")
    op.drop_index("ix_crm_lead_org_id", table_name="crm_lead")
    op.drop_table("crm_lead")
