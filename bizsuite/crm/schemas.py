from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


PartyType = Literal["Customer", "Supplier", "Employee"]


class LeadCreate(BaseModel):
    salutation: str | None = None
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: EmailStr | None = None
    job_title: str | None = None
    status: str = "Lead"
    source: str | None = None
    phone: str | None = None
    mobile_no: str | None = None
    territory: str | None = None
    industry: str | None = None
    lead_owner_id: str | None = None
    qualification_status: str | None = None
    org_id: str | None = None
    company_id: str | None = None


class LeadUpdate(BaseModel):
    salutation: str | None = None
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: EmailStr | None = None
    job_title: str | None = None
    status: str | None = None
    source: str | None = None
    phone: str | None = None
    mobile_no: str | None = None
    territory: str | None = None
    industry: str | None = None
    lead_owner_id: str | None = None
    qualification_status: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    company_id: str | None
    salutation: str | None
    first_name: str | None
    middle_name: str | None
    last_name: str | None
    lead_name: str | None
    title: str | None
    company_name: str | None
    email: str | None
    job_title: str | None
    status: str
    source: str | None
    phone: str | None
    mobile_no: str | None
    territory: str | None
    industry: str | None
    lead_owner_id: str | None
    qualification_status: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class LeadConvertRequest(BaseModel):
    title: str | None = None
    sales_stage_id: UUID | None = None
    expected_closing: date | None = None
    opportunity_owner_id: str | None = None


class SalesStageCreate(BaseModel):
    stage_name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    position: int = Field(default=0, ge=0)
    org_id: str | None = None
    company_id: str | None = None


class SalesStageUpdate(BaseModel):
    stage_name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    position: int | None = Field(default=None, ge=0)


class SalesStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    company_id: str | None
    stage_name: str
    description: str | None
    position: int
    created_at: datetime
    updated_at: datetime


class OpportunityItemCreate(BaseModel):
    item_code: str | None = None
    item_name: str | None = None
    uom: str | None = None
    description: str | None = None
    qty: Decimal = Field(default=Decimal("1"), ge=0, max_digits=15, decimal_places=2)
    rate: Decimal = Field(default=Decimal("0"), ge=0, max_digits=15, decimal_places=2)


class OpportunityItemUpdate(BaseModel):
    item_code: str | None = None
    item_name: str | None = None
    uom: str | None = None
    description: str | None = None
    qty: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    rate: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)


class OpportunityItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    opportunity_id: UUID
    idx: int
    item_code: str | None
    item_name: str | None
    uom: str | None
    description: str | None
    qty: Decimal
    rate: Decimal
    amount: Decimal
    base_rate: Decimal
    base_amount: Decimal


class OpportunityCreate(BaseModel):
    title: str | None = None
    opportunity_from: str | None = None
    lead_id: UUID | None = None
    customer_name: str | None = None
    sales_stage_id: UUID | None = None
    status: str = "Open"
    currency: str | None = None
    conversion_rate: Decimal | None = Field(default=None, gt=0, max_digits=15, decimal_places=4)
    probability: Decimal | None = Field(default=None, ge=0, le=100)
    expected_closing: date | None = None
    transaction_date: date | None = None
    contact_email: EmailStr | None = None
    contact_mobile: str | None = None
    territory: str | None = None
    opportunity_owner_id: str | None = None
    items: list[OpportunityItemCreate] = Field(default_factory=list)
    org_id: str | None = None
    company_id: str | None = None


class OpportunityUpdate(BaseModel):
    title: str | None = None
    customer_name: str | None = None
    sales_stage_id: UUID | None = None
    status: str | None = None
    currency: str | None = None
    conversion_rate: Decimal | None = Field(default=None, gt=0, max_digits=15, decimal_places=4)
    probability: Decimal | None = Field(default=None, ge=0, le=100)
    expected_closing: date | None = None
    transaction_date: date | None = None
    contact_email: EmailStr | None = None
    contact_mobile: str | None = None
    territory: str | None = None
    opportunity_owner_id: str | None = None
    order_lost_reason: str | None = None
    items: list[OpportunityItemCreate] | None = None


class OpportunityDeclareLostRequest(BaseModel):
    order_lost_reason: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    company_id: str | None
    title: str | None
    opportunity_from: str | None
    lead_id: UUID | None
    customer_name: str | None
    sales_stage_id: UUID | None
    status: str
    currency: str
    conversion_rate: Decimal
    probability: Decimal | None
    expected_closing: date | None
    transaction_date: date | None
    contact_email: str | None
    contact_mobile: str | None
    territory: str | None
    opportunity_owner_id: str | None
    order_lost_reason: str | None
    total: Decimal
    base_total: Decimal
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    items: list[OpportunityItemRead] = Field(default_factory=list)


class ChecklistItemCreate(BaseModel):
    requirement: str = Field(min_length=1)
    fulfilled: bool = False
    notes: str | None = None


class ChecklistItemUpdate(BaseModel):
    requirement: str | None = Field(default=None, min_length=1)
    fulfilled: bool | None = None
    notes: str | None = None


class ChecklistItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_id: UUID
    idx: int
    requirement: str
    fulfilled: bool
    notes: str | None


class _ContractDates(BaseModel):
    @model_validator(mode="after")
    def validate_date_range(self):  # type: ignore[no-untyped-def]
        start_date = getattr(self, "start_date", None)
        end_date = getattr(self, "end_date", None)
        if start_date is not None and end_date is not None and end_date < start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class ContractCreate(_ContractDates):
    party_type: PartyType = "Customer"
    party_name: str = Field(min_length=1)
    party_user_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    contract_template: str | None = None
    contract_terms: str | None = None
    requires_fulfilment: bool = False
    fulfilment_deadline: date | None = None
    document_type: str | None = None
    document_name: str | None = None
    opportunity_id: UUID | None = None
    fulfilment_checklists: list[ChecklistItemCreate] = Field(default_factory=list)
    org_id: str | None = None
    company_id: str | None = None


class ContractUpdate(_ContractDates):
    party_type: PartyType | None = None
    party_name: str | None = Field(default=None, min_length=1)
    party_user_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    contract_template: str | None = None
    contract_terms: str | None = None
    requires_fulfilment: bool | None = None
    fulfilment_deadline: date | None = None
    document_type: str | None = None
    document_name: str | None = None
    opportunity_id: UUID | None = None
    fulfilment_checklists: list[ChecklistItemCreate] | None = None


class ContractSignRequest(BaseModel):
    signee: str = Field(min_length=1)
    ip_address: str | None = None


class ContractRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    org_id: str
    company_id: str | None
    party_type: str
    party_name: str
    party_user_id: str | None
    status: str
    is_signed: bool
    start_date: date | None
    end_date: date | None
    signee: str | None
    signed_on: datetime | None
    ip_address: str | None
    contract_template: str | None
    contract_terms: str | None
    requires_fulfilment: bool
    fulfilment_deadline: date | None
    fulfilment_status: str
    document_type: str | None
    document_name: str | None
    opportunity_id: UUID | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    fulfilment_checklists: list[ChecklistItemRead] = Field(default_factory=list)
