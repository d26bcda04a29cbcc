from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizsuite import audit, events
from bizsuite.core.config import get_settings
from bizsuite.crm.aggregates import (
    AggregateOverflowError,
    recalculate_contract_fulfilment,
    recalculate_opportunity_totals,
    rederive_opportunity_items,
)
from bizsuite.crm.derivation import (
    CONTRACT_CANCELLED,
    CONTRACT_UNSIGNED,
    derive_contract_status,
    derive_lead_names,
    derive_opportunity_item,
    fits_money,
    to_conversion_rate,
    to_money,
)
from bizsuite.crm.models import (
    CRMContract,
    CRMContractFulfilmentChecklist,
    CRMLead,
    CRMOpportunity,
    CRMOpportunityItem,
    CRMSalesStage,
)
from bizsuite.crm.repositories import (
    ContractRepository,
    LeadRepository,
    OpportunityRepository,
    SalesStageRepository,
)
from bizsuite.crm.schemas import (
    ChecklistItemCreate,
    ChecklistItemRead,
    ChecklistItemUpdate,
    ContractCreate,
    ContractRead,
    ContractSignRequest,
    ContractUpdate,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    OpportunityCreate,
    OpportunityDeclareLostRequest,
    OpportunityItemCreate,
    OpportunityItemRead,
    OpportunityItemUpdate,
    OpportunityRead,
    OpportunityUpdate,
    SalesStageCreate,
    SalesStageRead,
    SalesStageUpdate,
)
from bizsuite.metrics import observe_derivation
from bizsuite.platform.security.context import TenantContext
from bizsuite.platform.security.errors import AuthorizationError
from bizsuite.platform.security.repository import BaseRepository


logger = logging.getLogger("bizsuite.crm")

VALID_LEAD_STATUSES = {
    "Lead",
    "Open",
    "Replied",
    "Opportunity",
    "Quotation",
    "Lost Quotation",
    "Interested",
    "Converted",
    "Do Not Contact",
}
VALID_OPPORTUNITY_STATUSES = {"Open", "Quotation", "Converted", "Lost", "Replied", "Closed"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp_or_403(repository: BaseRepository, payload: dict[str, Any], ctx: TenantContext) -> dict[str, Any]:
    try:
        return repository.stamp_create(payload, ctx)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _guard_tenant_or_403(repository: BaseRepository, changes: dict[str, Any], ctx: TenantContext, record: Any) -> None:
    try:
        repository.validate_write_security(changes, ctx, existing=record)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _commit(session: Session, conflict_detail: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("crm.commit_conflict", extra={"error": str(exc.orig)})
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=conflict_detail) from exc


def _out_of_range(session: Session, detail: str) -> HTTPException:
    session.rollback()
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


def _drop_nulls(changes: dict[str, Any], fields: tuple[str, ...]) -> None:
    for field_name in fields:
        if field_name in changes and changes[field_name] is None:
            changes.pop(field_name)


def _offset(cursor: str | None) -> int:
    return int(cursor) if cursor and cursor.isdigit() else 0


def _contains(column: Any, needle: str) -> Any:
    return column.ilike(f"%{needle}%")


class LeadService:
    entity_type = "crm.lead"

    def __init__(self) -> None:
        self.repository = LeadRepository()

    def create_lead(self, session: Session, ctx: TenantContext, dto: LeadCreate) -> LeadRead:
        payload = _stamp_or_403(self.repository, dto.model_dump(), ctx)
        self._validate_status(payload["status"])
        if payload.get("email"):
            payload["email"] = str(payload["email"])
            self._ensure_unique_email(session, ctx, payload["org_id"], payload["email"])

        lead = CRMLead(**payload, created_by=ctx.user_id)
        self._derive(lead)
        session.add(lead)
        session.flush()

        lead_read = self._to_read(lead)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=lead_read.model_dump(mode="json"),
            org_id=lead.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.lead.created",
            {"lead_id": str(lead.id), "lead_name": lead.lead_name, "status": lead.status},
            actor_user_id=ctx.user_id,
            org_id=lead.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "lead conflicts with an existing record")
        return lead_read

    def list_leads(
        self,
        session: Session,
        ctx: TenantContext,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = self.repository.apply_scope_query(select(CRMLead), ctx)
        if filters.get("status"):
            stmt = stmt.where(CRMLead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(CRMLead.source == filters["source"])
        if filters.get("territory"):
            stmt = stmt.where(CRMLead.territory == filters["territory"])
        if filters.get("lead_owner_id"):
            stmt = stmt.where(CRMLead.lead_owner_id == filters["lead_owner_id"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(
                or_(
                    _contains(CRMLead.lead_name, q),
                    _contains(CRMLead.email, q),
                    _contains(CRMLead.company_name, q),
                    _contains(CRMLead.mobile_no, q),
                )
            )

        leads = session.scalars(
            stmt.order_by(CRMLead.created_at.desc(), CRMLead.id).offset(_offset(cursor)).limit(limit)
        ).all()
        return [self._to_read(lead) for lead in leads]

    def get_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> LeadRead:
        return self._to_read(self._get_visible(session, ctx, lead_id))

    def update_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_visible(session, ctx, lead_id)
        changes = dto.model_dump(exclude_unset=True)
        _guard_tenant_or_403(self.repository, changes, ctx, lead)
        _drop_nulls(changes, ("status",))
        if "status" in changes:
            self._validate_status(changes["status"])
        if changes.get("email"):
            changes["email"] = str(changes["email"])
            self._ensure_unique_email(session, ctx, lead.org_id, changes["email"], exclude_id=lead.id)
        if not changes:
            return self._to_read(lead)

        before = self._to_read(lead).model_dump(mode="json")
        for field_name, value in changes.items():
            setattr(lead, field_name, value)
        self._derive(lead)
        session.flush()

        updated = self._to_read(lead)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=lead.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.lead.updated",
            {"lead_id": str(lead.id), "changed_fields": sorted(changes), "status": lead.status},
            actor_user_id=ctx.user_id,
            org_id=lead.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "lead conflicts with an existing record")
        return updated

    def delete_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> None:
        lead = self._get_visible(session, ctx, lead_id)
        before = self._to_read(lead).model_dump(mode="json")
        org_id = lead.org_id
        session.delete(lead)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.lead.deleted",
            {"lead_id": str(lead_id)},
            actor_user_id=ctx.user_id,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "lead is still referenced")

    def convert_lead(
        self,
        session: Session,
        ctx: TenantContext,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> OpportunityRead:
        lead = self._get_visible(session, ctx, lead_id)
        if lead.status in {"Opportunity", "Converted"}:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead already converted")
        if dto.sales_stage_id is not None:
            sales_stage_service.resolve_stage(session, ctx, dto.sales_stage_id, org_id=lead.org_id)

        settings = get_settings()
        lead_before = self._to_read(lead).model_dump(mode="json")
        opportunity = CRMOpportunity(
            org_id=lead.org_id,
            company_id=lead.company_id,
            title=dto.title or lead.title,
            opportunity_from="Lead",
            lead_id=lead.id,
            customer_name=lead.company_name or lead.lead_name,
            sales_stage_id=dto.sales_stage_id,
            status="Open",
            currency=settings.default_currency,
            conversion_rate=to_conversion_rate(settings.default_conversion_rate),
            expected_closing=dto.expected_closing,
            transaction_date=date.today(),
            contact_email=lead.email,
            contact_mobile=lead.mobile_no,
            territory=lead.territory,
            opportunity_owner_id=dto.opportunity_owner_id or lead.lead_owner_id,
            total=Decimal("0.00"),
            base_total=Decimal("0.00"),
            created_by=ctx.user_id,
        )
        session.add(opportunity)
        lead.status = "Opportunity"
        session.flush()

        opportunity_read = opportunity_service.to_read(session, opportunity)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="convert",
            before=lead_before,
            after=self._to_read(lead).model_dump(mode="json"),
            org_id=lead.org_id,
            correlation_id=ctx.correlation_id,
        )
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=OpportunityService.entity_type,
            entity_id=str(opportunity.id),
            action="create",
            before=None,
            after=opportunity_read.model_dump(mode="json"),
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.lead.converted",
            {"lead_id": str(lead.id), "opportunity_id": str(opportunity.id)},
            actor_user_id=ctx.user_id,
            org_id=lead.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "lead conversion conflicts with an existing record")
        return opportunity_read

    def _get_visible(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> CRMLead:
        lead = self.repository.get_scoped(session, ctx, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _ensure_unique_email(
        self,
        session: Session,
        ctx: TenantContext,
        org_id: str,
        email: str,
        exclude_id: Any = None,
    ) -> None:
        owner_id = self.repository.email_owner(session, org_id=org_id, email=email, exclude_id=exclude_id)
        if owner_id is None:
            return
        # Only name the conflict when the caller can see the other lead.
        if self.repository.get_scoped(session, ctx, owner_id) is not None:
            detail = "lead email already exists"
        else:
            detail = "lead email is not available"
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)

    @staticmethod
    def _validate_status(value: str) -> None:
        if value not in VALID_LEAD_STATUSES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid lead status")

    @staticmethod
    def _derive(lead: CRMLead) -> None:
        names = derive_lead_names(
            salutation=lead.salutation,
            first_name=lead.first_name,
            middle_name=lead.middle_name,
            last_name=lead.last_name,
            company_name=lead.company_name,
            email=lead.email,
            lead_name=lead.lead_name,
        )
        lead.lead_name = names.lead_name
        lead.title = names.title
        observe_derivation("lead")

    @staticmethod
    def _to_read(lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(lead)


class SalesStageService:
    entity_type = "crm.sales_stage"

    def __init__(self) -> None:
        self.repository = SalesStageRepository()

    def list_stages(self, session: Session, ctx: TenantContext) -> list[SalesStageRead]:
        stmt = self.repository.apply_scope_query(select(CRMSalesStage), ctx)
        stages = session.scalars(stmt.order_by(CRMSalesStage.position, CRMSalesStage.stage_name)).all()
        return [SalesStageRead.model_validate(stage) for stage in stages]

    def get_stage(self, session: Session, ctx: TenantContext, stage_id: uuid.UUID) -> SalesStageRead:
        return SalesStageRead.model_validate(self._get_visible(session, ctx, stage_id))

    def create_stage(self, session: Session, ctx: TenantContext, dto: SalesStageCreate) -> SalesStageRead:
        payload = _stamp_or_403(self.repository, dto.model_dump(), ctx)
        if self.repository.name_taken(session, org_id=payload["org_id"], stage_name=payload["stage_name"]):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="sales stage already exists")

        stage = CRMSalesStage(**payload)
        session.add(stage)
        session.flush()

        stage_read = SalesStageRead.model_validate(stage)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=stage_read.model_dump(mode="json"),
            org_id=stage.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "sales stage already exists")
        return stage_read

    def update_stage(
        self,
        session: Session,
        ctx: TenantContext,
        stage_id: uuid.UUID,
        dto: SalesStageUpdate,
    ) -> SalesStageRead:
        stage = self._get_visible(session, ctx, stage_id)
        changes = dto.model_dump(exclude_unset=True)
        _guard_tenant_or_403(self.repository, changes, ctx, stage)
        _drop_nulls(changes, ("stage_name", "position"))
        if "stage_name" in changes and self.repository.name_taken(
            session,
            org_id=stage.org_id,
            stage_name=changes["stage_name"],
            exclude_id=stage.id,
        ):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="sales stage already exists")

        before = SalesStageRead.model_validate(stage).model_dump(mode="json")
        for field_name, value in changes.items():
            setattr(stage, field_name, value)
        session.flush()

        updated = SalesStageRead.model_validate(stage)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=stage.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "sales stage already exists")
        return updated

    def delete_stage(self, session: Session, ctx: TenantContext, stage_id: uuid.UUID) -> None:
        stage = self._get_visible(session, ctx, stage_id)
        in_use = session.scalar(select(func.count(CRMOpportunity.id)).where(CRMOpportunity.sales_stage_id == stage.id))
        if in_use:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="sales stage is in use")

        before = SalesStageRead.model_validate(stage).model_dump(mode="json")
        org_id = stage.org_id
        session.delete(stage)
        session.flush()
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage_id),
            action="delete",
            before=before,
            after=None,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "sales stage is in use")

    def resolve_stage(self, session: Session, ctx: TenantContext, stage_id: uuid.UUID, *, org_id: str) -> CRMSalesStage:
        """Return a stage usable by a record of ``org_id``; 422 when it is not visible."""

        stage = self.repository.get_scoped(session, ctx, stage_id)
        if stage is None or stage.org_id != org_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid sales stage")
        return stage

    def _get_visible(self, session: Session, ctx: TenantContext, stage_id: uuid.UUID) -> CRMSalesStage:
        stage = self.repository.get_scoped(session, ctx, stage_id)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="sales stage not found")
        return stage


class OpportunityService:
    entity_type = "crm.opportunity"
    item_entity_type = "crm.opportunity_item"

    def __init__(self) -> None:
        self.repository = OpportunityRepository()

    def create_opportunity(self, session: Session, ctx: TenantContext, dto: OpportunityCreate) -> OpportunityRead:
        payload = _stamp_or_403(self.repository, dto.model_dump(exclude={"items"}), ctx)
        self._validate_status(payload["status"])
        if payload.get("sales_stage_id") is not None:
            sales_stage_service.resolve_stage(session, ctx, payload["sales_stage_id"], org_id=payload["org_id"])
        if payload.get("lead_id") is not None:
            lead = lead_service.repository.get_scoped(session, ctx, payload["lead_id"])
            if lead is None or lead.org_id != payload["org_id"]:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid lead")

        settings = get_settings()
        if payload.get("contact_email"):
            payload["contact_email"] = str(payload["contact_email"])
        payload["currency"] = payload.get("currency") or settings.default_currency
        payload["conversion_rate"] = to_conversion_rate(
            payload.get("conversion_rate") or settings.default_conversion_rate
        )
        payload["transaction_date"] = payload.get("transaction_date") or date.today()

        opportunity = CRMOpportunity(
            **payload,
            total=Decimal("0.00"),
            base_total=Decimal("0.00"),
            created_by=ctx.user_id,
        )
        session.add(opportunity)
        session.flush()

        for idx, item_dto in enumerate(dto.items, start=1):
            self._add_item(session, opportunity, item_dto, idx)
        self._recalculate_totals(session, opportunity.id)

        opportunity_read = self.to_read(session, opportunity)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="create",
            before=None,
            after=opportunity_read.model_dump(mode="json"),
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.opportunity.created",
            {
                "opportunity_id": str(opportunity.id),
                "status": opportunity.status,
                "total": str(opportunity.total),
                "item_count": len(dto.items),
            },
            actor_user_id=ctx.user_id,
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "opportunity conflicts with an existing record")
        return opportunity_read

    def list_opportunities(
        self,
        session: Session,
        ctx: TenantContext,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[OpportunityRead]:
        stmt: Select[tuple[CRMOpportunity]] = self.repository.apply_scope_query(select(CRMOpportunity), ctx)
        if filters.get("status"):
            stmt = stmt.where(CRMOpportunity.status == filters["status"])
        if filters.get("sales_stage_id"):
            stmt = stmt.where(CRMOpportunity.sales_stage_id == filters["sales_stage_id"])
        if filters.get("opportunity_owner_id"):
            stmt = stmt.where(CRMOpportunity.opportunity_owner_id == filters["opportunity_owner_id"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(
                or_(
                    _contains(CRMOpportunity.customer_name, q),
                    _contains(CRMOpportunity.contact_email, q),
                    _contains(CRMOpportunity.title, q),
                )
            )

        opportunities = session.scalars(
            stmt.order_by(CRMOpportunity.created_at.desc(), CRMOpportunity.id).offset(_offset(cursor)).limit(limit)
        ).all()
        return [self.to_read(session, opportunity) for opportunity in opportunities]

    def get_opportunity(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID) -> OpportunityRead:
        return self.to_read(session, self._get_visible(session, ctx, opportunity_id))

    def update_opportunity(
        self,
        session: Session,
        ctx: TenantContext,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        changes = dto.model_dump(exclude_unset=True)
        items_payload = changes.pop("items", None)
        _guard_tenant_or_403(self.repository, changes, ctx, opportunity)
        _drop_nulls(changes, ("status", "currency", "conversion_rate"))
        if "status" in changes:
            self._validate_status(changes["status"])
        if changes.get("sales_stage_id") is not None:
            sales_stage_service.resolve_stage(session, ctx, changes["sales_stage_id"], org_id=opportunity.org_id)
        if changes.get("contact_email"):
            changes["contact_email"] = str(changes["contact_email"])
        if "conversion_rate" in changes:
            changes["conversion_rate"] = to_conversion_rate(changes["conversion_rate"])
        if not changes and items_payload is None:
            return self.to_read(session, opportunity)

        before = self.to_read(session, opportunity).model_dump(mode="json")
        rate_changed = (
            "conversion_rate" in changes
            and to_conversion_rate(opportunity.conversion_rate) != changes["conversion_rate"]
        )
        for field_name, value in changes.items():
            setattr(opportunity, field_name, value)
        session.flush()

        if dto.items is not None:
            self._replace_items(session, opportunity, dto.items)
        elif rate_changed:
            rederive_opportunity_items(session, opportunity)
            for item in self._load_items(session, opportunity.id):
                self._ensure_item_fits(session, item)
        if dto.items is not None or rate_changed:
            self._recalculate_totals(session, opportunity.id)

        updated = self.to_read(session, opportunity)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.opportunity.updated",
            {
                "opportunity_id": str(opportunity.id),
                "changed_fields": sorted(changes) + (["items"] if dto.items is not None else []),
                "status": opportunity.status,
            },
            actor_user_id=ctx.user_id,
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "opportunity conflicts with an existing record")
        return updated

    def declare_lost(
        self,
        session: Session,
        ctx: TenantContext,
        opportunity_id: uuid.UUID,
        dto: OpportunityDeclareLostRequest,
    ) -> OpportunityRead:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        before = self.to_read(session, opportunity).model_dump(mode="json")
        opportunity.status = "Lost"
        opportunity.order_lost_reason = dto.order_lost_reason
        session.flush()

        updated = self.to_read(session, opportunity)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="declare_lost",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.opportunity.lost",
            {"opportunity_id": str(opportunity.id), "order_lost_reason": dto.order_lost_reason},
            actor_user_id=ctx.user_id,
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "opportunity conflicts with an existing record")
        return updated

    def delete_opportunity(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID) -> None:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        before = self.to_read(session, opportunity).model_dump(mode="json")
        org_id = opportunity.org_id
        session.delete(opportunity)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity_id),
            action="delete",
            before=before,
            after=None,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.opportunity.deleted",
            {"opportunity_id": str(opportunity_id), "item_count": len(before["items"])},
            actor_user_id=ctx.user_id,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "opportunity is still referenced")

    def list_items(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID) -> list[OpportunityItemRead]:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        return [OpportunityItemRead.model_validate(item) for item in self._load_items(session, opportunity.id)]

    def add_item(
        self,
        session: Session,
        ctx: TenantContext,
        opportunity_id: uuid.UUID,
        dto: OpportunityItemCreate,
    ) -> OpportunityItemRead:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        next_idx = session.scalar(
            select(func.coalesce(func.max(CRMOpportunityItem.idx), 0)).where(
                CRMOpportunityItem.opportunity_id == opportunity.id
            )
        )
        item = self._add_item(session, opportunity, dto, int(next_idx or 0) + 1)
        self._recalculate_totals(session, opportunity.id)

        item_read = OpportunityItemRead.model_validate(item)
        self._record_item_change(ctx, opportunity, item.id, "create", None, item_read.model_dump(mode="json"))
        _commit(session, "opportunity item conflicts with an existing record")
        return item_read

    def update_item(
        self,
        session: Session,
        ctx: TenantContext,
        opportunity_id: uuid.UUID,
        item_id: uuid.UUID,
        dto: OpportunityItemUpdate,
    ) -> OpportunityItemRead:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        item = self._get_item(session, opportunity, item_id)
        changes = dto.model_dump(exclude_unset=True)
        _drop_nulls(changes, ("qty", "rate"))
        if not changes:
            return OpportunityItemRead.model_validate(item)

        before = OpportunityItemRead.model_validate(item).model_dump(mode="json")
        for field_name, value in changes.items():
            setattr(item, field_name, to_money(value) if field_name in {"qty", "rate"} else value)
        self._derive_item(item, opportunity.conversion_rate)
        self._ensure_item_fits(session, item)
        self._recalculate_totals(session, opportunity.id)

        item_read = OpportunityItemRead.model_validate(item)
        self._record_item_change(ctx, opportunity, item.id, "update", before, item_read.model_dump(mode="json"))
        _commit(session, "opportunity item conflicts with an existing record")
        return item_read

    def delete_item(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID, item_id: uuid.UUID) -> None:
        opportunity = self._get_visible(session, ctx, opportunity_id)
        item = self._get_item(session, opportunity, item_id)
        before = OpportunityItemRead.model_validate(item).model_dump(mode="json")
        session.delete(item)
        self._recalculate_totals(session, opportunity.id)

        self._record_item_change(ctx, opportunity, item_id, "delete", before, None)
        _commit(session, "opportunity item conflicts with an existing record")

    def to_read(self, session: Session, opportunity: CRMOpportunity) -> OpportunityRead:
        session.flush()
        session.expire(opportunity, ["items"])
        return OpportunityRead.model_validate(opportunity)

    def _get_visible(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = self.repository.get_scoped(session, ctx, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity

    @staticmethod
    def _get_item(session: Session, opportunity: CRMOpportunity, item_id: uuid.UUID) -> CRMOpportunityItem:
        item = session.scalar(
            select(CRMOpportunityItem).where(
                CRMOpportunityItem.id == item_id,
                CRMOpportunityItem.opportunity_id == opportunity.id,
            )
        )
        if item is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity item not found")
        return item

    @staticmethod
    def _load_items(session: Session, opportunity_id: uuid.UUID) -> list[CRMOpportunityItem]:
        return list(
            session.scalars(
                select(CRMOpportunityItem)
                .where(CRMOpportunityItem.opportunity_id == opportunity_id)
                .order_by(CRMOpportunityItem.idx)
            ).all()
        )

    def _add_item(
        self,
        session: Session,
        opportunity: CRMOpportunity,
        dto: OpportunityItemCreate,
        idx: int,
    ) -> CRMOpportunityItem:
        item = CRMOpportunityItem(
            opportunity_id=opportunity.id,
            idx=idx,
            item_code=dto.item_code,
            item_name=dto.item_name,
            uom=dto.uom,
            description=dto.description,
            qty=to_money(dto.qty),
            rate=to_money(dto.rate),
            amount=Decimal("0.00"),
            base_rate=Decimal("0.00"),
            base_amount=Decimal("0.00"),
        )
        self._derive_item(item, opportunity.conversion_rate)
        self._ensure_item_fits(session, item)
        session.add(item)
        session.flush()
        return item

    def _replace_items(
        self,
        session: Session,
        opportunity: CRMOpportunity,
        items: list[OpportunityItemCreate],
    ) -> None:
        for existing in self._load_items(session, opportunity.id):
            session.delete(existing)
        session.flush()
        for idx, item_dto in enumerate(items, start=1):
            self._add_item(session, opportunity, item_dto, idx)

    @staticmethod
    def _derive_item(item: CRMOpportunityItem, conversion_rate: Decimal | None) -> None:
        derived = derive_opportunity_item(
            item.rate,
            item.qty,
            conversion_rate,
            amount=item.amount,
            base_rate=item.base_rate,
            base_amount=item.base_amount,
        )
        item.amount = derived.amount
        item.base_rate = derived.base_rate
        item.base_amount = derived.base_amount
        observe_derivation("opportunity_item")

    @staticmethod
    def _ensure_item_fits(session: Session, item: CRMOpportunityItem) -> None:
        if not all(fits_money(value) for value in (item.amount, item.base_rate, item.base_amount)):
            raise _out_of_range(session, "opportunity item amount out of range")

    @staticmethod
    def _recalculate_totals(session: Session, opportunity_id: uuid.UUID) -> None:
        try:
            recalculate_opportunity_totals(session, opportunity_id)
        except AggregateOverflowError as exc:
            raise _out_of_range(session, "opportunity total out of range") from exc

    def _record_item_change(
        self,
        ctx: TenantContext,
        opportunity: CRMOpportunity,
        item_id: uuid.UUID,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.item_entity_type,
            entity_id=str(item_id),
            action=action,
            before=before,
            after=after,
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            f"{self.item_entity_type}.{action}d",
            {"opportunity_id": str(opportunity.id), "item_id": str(item_id)},
            actor_user_id=ctx.user_id,
            org_id=opportunity.org_id,
            correlation_id=ctx.correlation_id,
        )

    @staticmethod
    def _validate_status(value: str) -> None:
        if value not in VALID_OPPORTUNITY_STATUSES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid opportunity status")


class ContractService:
    entity_type = "crm.contract"
    checklist_entity_type = "crm.contract_checklist"

    def __init__(self, now: Callable[[], datetime] = utcnow) -> None:
        self.repository = ContractRepository()
        self._now = now

    def create_contract(self, session: Session, ctx: TenantContext, dto: ContractCreate) -> ContractRead:
        payload = _stamp_or_403(self.repository, dto.model_dump(exclude={"fulfilment_checklists"}), ctx)
        if payload.get("opportunity_id") is not None:
            self._validate_opportunity(session, ctx, payload["opportunity_id"], org_id=payload["org_id"])

        contract = CRMContract(
            **payload,
            status=CONTRACT_UNSIGNED,
            is_signed=False,
            created_by=ctx.user_id,
        )
        self._derive_status(contract)
        session.add(contract)
        session.flush()

        for idx, row_dto in enumerate(dto.fulfilment_checklists, start=1):
            self._add_checklist_row(session, contract, row_dto, idx)
        recalculate_contract_fulfilment(session, contract.id)

        contract_read = self.to_read(session, contract)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(contract.id),
            action="create",
            before=None,
            after=contract_read.model_dump(mode="json"),
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.contract.created",
            {
                "contract_id": str(contract.id),
                "status": contract.status,
                "fulfilment_status": contract.fulfilment_status,
            },
            actor_user_id=ctx.user_id,
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "contract conflicts with an existing record")
        return contract_read

    def list_contracts(
        self,
        session: Session,
        ctx: TenantContext,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[ContractRead]:
        stmt: Select[tuple[CRMContract]] = self.repository.apply_scope_query(select(CRMContract), ctx)
        if filters.get("status"):
            stmt = stmt.where(CRMContract.status == filters["status"])
        if filters.get("party_type"):
            stmt = stmt.where(CRMContract.party_type == filters["party_type"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(or_(_contains(CRMContract.party_name, q), _contains(CRMContract.signee, q)))

        contracts = session.scalars(
            stmt.order_by(CRMContract.created_at.desc(), CRMContract.id).offset(_offset(cursor)).limit(limit)
        ).all()
        return [self.to_read(session, contract) for contract in contracts]

    def get_contract(self, session: Session, ctx: TenantContext, contract_id: uuid.UUID) -> ContractRead:
        return self.to_read(session, self._get_visible(session, ctx, contract_id))

    def update_contract(
        self,
        session: Session,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        dto: ContractUpdate,
    ) -> ContractRead:
        contract = self._get_visible(session, ctx, contract_id)
        changes = dto.model_dump(exclude_unset=True)
        changes.pop("fulfilment_checklists", None)
        _guard_tenant_or_403(self.repository, changes, ctx, contract)
        _drop_nulls(changes, ("party_type", "party_name", "requires_fulfilment"))

        start_date = changes.get("start_date", contract.start_date)
        end_date = changes.get("end_date", contract.end_date)
        if start_date is not None and end_date is not None and end_date < start_date:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="end_date must be on or after start_date",
            )
        if changes.get("opportunity_id") is not None:
            self._validate_opportunity(session, ctx, changes["opportunity_id"], org_id=contract.org_id)

        before = self.to_read(session, contract).model_dump(mode="json")
        for field_name, value in changes.items():
            setattr(contract, field_name, value)
        self._derive_status(contract)
        session.flush()

        if dto.fulfilment_checklists is not None:
            for existing in self._load_checklist(session, contract.id):
                session.delete(existing)
            session.flush()
            for idx, row_dto in enumerate(dto.fulfilment_checklists, start=1):
                self._add_checklist_row(session, contract, row_dto, idx)
        recalculate_contract_fulfilment(session, contract.id)

        updated = self.to_read(session, contract)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(contract.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.contract.updated",
            {
                "contract_id": str(contract.id),
                "changed_fields": sorted(changes)
                + (["fulfilment_checklists"] if dto.fulfilment_checklists is not None else []),
                "status": contract.status,
            },
            actor_user_id=ctx.user_id,
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "contract conflicts with an existing record")
        return updated

    def sign_contract(
        self,
        session: Session,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        dto: ContractSignRequest,
    ) -> ContractRead:
        contract = self._get_visible(session, ctx, contract_id)
        if contract.status == CONTRACT_CANCELLED:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="cancelled contract cannot be signed")
        if contract.is_signed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="contract already signed")

        before = self.to_read(session, contract).model_dump(mode="json")
        contract.is_signed = True
        contract.signee = dto.signee
        contract.ip_address = dto.ip_address
        contract.signed_on = self._now()
        self._derive_status(contract)
        session.flush()

        updated = self.to_read(session, contract)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(contract.id),
            action="sign",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.contract.signed",
            {"contract_id": str(contract.id), "signee": contract.signee, "status": contract.status},
            actor_user_id=ctx.user_id,
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "contract conflicts with an existing record")
        return updated

    def cancel_contract(self, session: Session, ctx: TenantContext, contract_id: uuid.UUID) -> ContractRead:
        contract = self._get_visible(session, ctx, contract_id)
        if contract.status == CONTRACT_CANCELLED:
            return self.to_read(session, contract)

        before = self.to_read(session, contract).model_dump(mode="json")
        contract.status = CONTRACT_CANCELLED
        session.flush()

        updated = self.to_read(session, contract)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(contract.id),
            action="cancel",
            before=before,
            after=updated.model_dump(mode="json"),
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.contract.cancelled",
            {"contract_id": str(contract.id), "previous_status": before["status"]},
            actor_user_id=ctx.user_id,
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "contract conflicts with an existing record")
        return updated

    def delete_contract(self, session: Session, ctx: TenantContext, contract_id: uuid.UUID) -> None:
        contract = self._get_visible(session, ctx, contract_id)
        before = self.to_read(session, contract).model_dump(mode="json")
        org_id = contract.org_id
        session.delete(contract)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(contract_id),
            action="delete",
            before=before,
            after=None,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            "crm.contract.deleted",
            {"contract_id": str(contract_id)},
            actor_user_id=ctx.user_id,
            org_id=org_id,
            correlation_id=ctx.correlation_id,
        )
        _commit(session, "contract is still referenced")

    def list_checklist(self, session: Session, ctx: TenantContext, contract_id: uuid.UUID) -> list[ChecklistItemRead]:
        contract = self._get_visible(session, ctx, contract_id)
        return [ChecklistItemRead.model_validate(row) for row in self._load_checklist(session, contract.id)]

    def add_checklist_row(
        self,
        session: Session,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        dto: ChecklistItemCreate,
    ) -> ChecklistItemRead:
        contract = self._get_visible(session, ctx, contract_id)
        next_idx = session.scalar(
            select(func.coalesce(func.max(CRMContractFulfilmentChecklist.idx), 0)).where(
                CRMContractFulfilmentChecklist.contract_id == contract.id
            )
        )
        row = self._add_checklist_row(session, contract, dto, int(next_idx or 0) + 1)
        recalculate_contract_fulfilment(session, contract.id)

        row_read = ChecklistItemRead.model_validate(row)
        self._record_checklist_change(ctx, contract, row.id, "create", None, row_read.model_dump(mode="json"))
        _commit(session, "checklist row conflicts with an existing record")
        return row_read

    def update_checklist_row(
        self,
        session: Session,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        row_id: uuid.UUID,
        dto: ChecklistItemUpdate,
    ) -> ChecklistItemRead:
        contract = self._get_visible(session, ctx, contract_id)
        row = self._get_checklist_row(session, contract, row_id)
        changes = dto.model_dump(exclude_unset=True)
        _drop_nulls(changes, ("requirement", "fulfilled"))
        if not changes:
            return ChecklistItemRead.model_validate(row)

        before = ChecklistItemRead.model_validate(row).model_dump(mode="json")
        for field_name, value in changes.items():
            setattr(row, field_name, value)
        recalculate_contract_fulfilment(session, contract.id)

        row_read = ChecklistItemRead.model_validate(row)
        self._record_checklist_change(ctx, contract, row.id, "update", before, row_read.model_dump(mode="json"))
        _commit(session, "checklist row conflicts with an existing record")
        return row_read

    def delete_checklist_row(
        self,
        session: Session,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        row_id: uuid.UUID,
    ) -> None:
        contract = self._get_visible(session, ctx, contract_id)
        row = self._get_checklist_row(session, contract, row_id)
        before = ChecklistItemRead.model_validate(row).model_dump(mode="json")
        session.delete(row)
        recalculate_contract_fulfilment(session, contract.id)

        self._record_checklist_change(ctx, contract, row_id, "delete", before, None)
        _commit(session, "checklist row conflicts with an existing record")

    def to_read(self, session: Session, contract: CRMContract) -> ContractRead:
        session.flush()
        session.expire(contract, ["fulfilment_checklists"])
        return ContractRead.model_validate(contract)

    def _derive_status(self, contract: CRMContract) -> None:
        contract.status = derive_contract_status(
            is_signed=bool(contract.is_signed),
            end_date=contract.end_date,
            status=contract.status,
            now=self._now(),
        )
        observe_derivation("contract")

    def _get_visible(self, session: Session, ctx: TenantContext, contract_id: uuid.UUID) -> CRMContract:
        contract = self.repository.get_scoped(session, ctx, contract_id)
        if contract is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contract not found")
        return contract

    @staticmethod
    def _validate_opportunity(session: Session, ctx: TenantContext, opportunity_id: uuid.UUID, *, org_id: str) -> None:
        opportunity = opportunity_service.repository.get_scoped(session, ctx, opportunity_id)
        if opportunity is None or opportunity.org_id != org_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid opportunity")

    @staticmethod
    def _get_checklist_row(
        session: Session,
        contract: CRMContract,
        row_id: uuid.UUID,
    ) -> CRMContractFulfilmentChecklist:
        row = session.scalar(
            select(CRMContractFulfilmentChecklist).where(
                CRMContractFulfilmentChecklist.id == row_id,
                CRMContractFulfilmentChecklist.contract_id == contract.id,
            )
        )
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="checklist row not found")
        return row

    @staticmethod
    def _load_checklist(session: Session, contract_id: uuid.UUID) -> list[CRMContractFulfilmentChecklist]:
        return list(
            session.scalars(
                select(CRMContractFulfilmentChecklist)
                .where(CRMContractFulfilmentChecklist.contract_id == contract_id)
                .order_by(CRMContractFulfilmentChecklist.idx)
            ).all()
        )

    @staticmethod
    def _add_checklist_row(
        session: Session,
        contract: CRMContract,
        dto: ChecklistItemCreate,
        idx: int,
    ) -> CRMContractFulfilmentChecklist:
        row = CRMContractFulfilmentChecklist(
            contract_id=contract.id,
            idx=idx,
            requirement=dto.requirement,
            fulfilled=dto.fulfilled,
            notes=dto.notes,
        )
        session.add(row)
        session.flush()
        return row

    def _record_checklist_change(
        self,
        ctx: TenantContext,
        contract: CRMContract,
        row_id: uuid.UUID,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.checklist_entity_type,
            entity_id=str(row_id),
            action=action,
            before=before,
            after=after,
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            f"{self.checklist_entity_type}.{action}d",
            {
                "contract_id": str(contract.id),
                "row_id": str(row_id),
                "fulfilment_status": contract.fulfilment_status,
            },
            actor_user_id=ctx.user_id,
            org_id=contract.org_id,
            correlation_id=ctx.correlation_id,
        )


lead_service = LeadService()
sales_stage_service = SalesStageService()
opportunity_service = OpportunityService()
contract_service = ContractService()
