from __future__ import annotations

from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from bizsuite.crm.models import CRMContract, CRMLead, CRMOpportunity, CRMSalesStage
from bizsuite.platform.security.repository import BaseRepository


class LeadRepository(BaseRepository):
    resource = "crm.lead"
    model = CRMLead

    def email_owner(self, session: Session, *, org_id: str, email: str, exclude_id: Any = None) -> Any:
        # Checked against the whole org, not the caller's company sub-scope.
        stmt: Select[Any] = select(CRMLead.id).where(CRMLead.org_id == org_id, CRMLead.email == email)
        if exclude_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_id)
        return session.scalar(stmt.limit(1))


class SalesStageRepository(BaseRepository):
    resource = "crm.sales_stage"
    model = CRMSalesStage

    def name_taken(self, session: Session, *, org_id: str, stage_name: str, exclude_id: Any = None) -> bool:
        stmt: Select[Any] = select(CRMSalesStage.id).where(
            CRMSalesStage.org_id == org_id,
            CRMSalesStage.stage_name == stage_name,
        )
        if exclude_id is not None:
            stmt = stmt.where(CRMSalesStage.id != exclude_id)
        return session.scalar(stmt.limit(1)) is not None


class OpportunityRepository(BaseRepository):
    resource = "crm.opportunity"
    model = CRMOpportunity


class ContractRepository(BaseRepository):
    resource = "crm.contract"
    model = CRMContract
