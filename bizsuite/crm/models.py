from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bizsuite.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantScopedMixin:
    """Columns shared by every tenant-owned CRM row."""

    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    company_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMLead(TenantScopedMixin, TimestampMixin, Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    salutation: Mapped[str | None] = mapped_column(String(32), nullable=True)
    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    middle_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    lead_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Lead", server_default="Lead")
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    mobile_no: Mapped[str | None] = mapped_column(String(32), nullable=True)
    territory: Mapped[str | None] = mapped_column(String(64), nullable=True)
    industry: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lead_owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    qualification_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_crm_lead_org_email"),
        Index("ix_crm_lead_tenant_created", "org_id", "company_id", "created_at"),
    )


class CRMSalesStage(TenantScopedMixin, TimestampMixin, Base):
    __tablename__ = "crm_sales_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (
        UniqueConstraint("org_id", "stage_name", name="uq_crm_sales_stage_org_name"),
        Index("ix_crm_sales_stage_tenant_created", "org_id", "company_id", "created_at"),
    )


class CRMOpportunity(TenantScopedMixin, TimestampMixin, Base):
    __tablename__ = "crm_opportunity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    opportunity_from: Mapped[str | None] = mapped_column(String(32), nullable=True)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="SET NULL"),
        nullable=True,
    )
    customer_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    sales_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_sales_stage.id", ondelete="RESTRICT"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Open", server_default="Open")
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="USD", server_default="USD")
    conversion_rate: Mapped[Decimal] = mapped_column(
        Numeric(15, 4),
        nullable=False,
        default=Decimal("1.0000"),
        server_default="1.0000",
    )
    probability: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    expected_closing: Mapped[date | None] = mapped_column(Date, nullable=True)
    transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_mobile: Mapped[str | None] = mapped_column(String(32), nullable=True)
    territory: Mapped[str | None] = mapped_column(String(64), nullable=True)
    opportunity_owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    total: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0.00"), server_default="0")
    base_total: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0.00"),
        server_default="0",
    )
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    items: Mapped[list[CRMOpportunityItem]] = relationship(
        "CRMOpportunityItem",
        back_populates="opportunity",
        cascade="all, delete-orphan",
        order_by="CRMOpportunityItem.idx",
    )

    __table_args__ = (Index("ix_crm_opportunity_tenant_created", "org_id", "company_id", "created_at"),)


class CRMOpportunityItem(TimestampMixin, Base):
    __tablename__ = "crm_opportunity_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    opportunity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_opportunity.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    idx: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    item_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    item_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    uom: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    qty: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("1.00"))
    rate: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    base_rate: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    base_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))

    opportunity: Mapped[CRMOpportunity] = relationship("CRMOpportunity", back_populates="items")


class CRMContract(TenantScopedMixin, TimestampMixin, Base):
    __tablename__ = "crm_contract"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    party_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Customer", server_default="Customer")
    party_name: Mapped[str] = mapped_column(Text, nullable=False)
    party_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Unsigned", server_default="Unsigned")
    is_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    signee: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contract_template: Mapped[str | None] = mapped_column(String(128), nullable=True)
    contract_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_fulfilment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    fulfilment_deadline: Mapped[date | None] = mapped_column(Date, nullable=True)
    fulfilment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="N/A", server_default="N/A")
    document_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    document_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    opportunity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_opportunity.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    fulfilment_checklists: Mapped[list[CRMContractFulfilmentChecklist]] = relationship(
        "CRMContractFulfilmentChecklist",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="CRMContractFulfilmentChecklist.idx",
    )

    __table_args__ = (Index("ix_crm_contract_tenant_created", "org_id", "company_id", "created_at"),)


class CRMContractFulfilmentChecklist(TimestampMixin, Base):
    __tablename__ = "crm_contract_fulfilment_checklist"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contract.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    idx: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    requirement: Mapped[str] = mapped_column(Text, nullable=False)
    fulfilled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    contract: Mapped[CRMContract] = relationship("CRMContract", back_populates="fulfilment_checklists")
