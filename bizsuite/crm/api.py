from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from bizsuite.context import get_correlation_id
from bizsuite.core.auth import AuthUser, get_current_user
from bizsuite.core.database import get_db
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
from bizsuite.crm.service import contract_service, lead_service, opportunity_service, sales_stage_service
from bizsuite.platform.security.context import TenantContext
from bizsuite.platform.security.tenancy import is_superadmin

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
sales_stages_router = APIRouter(prefix="/api/crm", tags=["crm.sales_stages"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
contracts_router = APIRouter(prefix="/api/crm", tags=["crm.contracts"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_tenant_context(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> TenantContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    roles = [str(role) for role in auth_user.roles]
    ctx = TenantContext(
        user_id=auth_user.sub,
        org_id=auth_user.org_id,
        company_id=auth_user.company_id,
        correlation_id=correlation_id,
        roles=roles,
        permissions=sorted(set(roles)),
    )
    ctx.is_super_admin = is_superadmin(ctx)
    return ctx


def require_permission(ctx: TenantContext, permission: str) -> None:
    if is_superadmin(ctx):
        return
    if permission not in ctx.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    territory: str | None = Query(default=None),
    lead_owner_id: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.read")
        return lead_service.list_leads(
            db,
            ctx,
            filters={
                "status": status_filter,
                "source": source,
                "territory": territory,
                "lead_owner_id": lead_owner_id,
                "q": q,
            },
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.create")
        return lead_service.create_lead(db, ctx, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.read")
        return lead_service.get_lead(db, ctx, lead_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.update")
        return lead_service.update_lead(db, ctx, lead_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}")
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        require_permission(ctx, "crm.leads.delete")
        lead_service.delete_lead(db, ctx, lead_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.update")
        require_permission(ctx, "crm.opportunities.create")
        return lead_service.convert_lead(db, ctx, lead_id, dto or LeadConvertRequest())
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_convert_failed")


@sales_stages_router.get("/sales-stages", response_model=list[SalesStageRead])
def list_sales_stages(
    request: Request,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[SalesStageRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_stages.read")
        return sales_stage_service.list_stages(db, ctx)
    except HTTPException as exc:
        return _failure(request, exc, "crm_sales_stage_list_failed")


@sales_stages_router.post("/sales-stages", response_model=SalesStageRead, status_code=status.HTTP_201_CREATED)
def create_sales_stage(
    request: Request,
    dto: SalesStageCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> SalesStageRead | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_stages.create")
        return sales_stage_service.create_stage(db, ctx, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_sales_stage_create_failed")


@sales_stages_router.get("/sales-stages/{stage_id}", response_model=SalesStageRead)
def get_sales_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> SalesStageRead | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_stages.read")
        return sales_stage_service.get_stage(db, ctx, stage_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_sales_stage_get_failed")


@sales_stages_router.patch("/sales-stages/{stage_id}", response_model=SalesStageRead)
def update_sales_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: SalesStageUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> SalesStageRead | JSONResponse:
    try:
        require_permission(ctx, "crm.sales_stages.update")
        return sales_stage_service.update_stage(db, ctx, stage_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_sales_stage_update_failed")


@sales_stages_router.delete("/sales-stages/{stage_id}")
def delete_sales_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        require_permission(ctx, "crm.sales_stages.delete")
        sales_stage_service.delete_stage(db, ctx, stage_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failure(request, exc, "crm_sales_stage_delete_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    sales_stage_id: uuid.UUID | None = Query(default=None),
    opportunity_owner_id: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            db,
            ctx,
            filters={
                "status": status_filter,
                "sales_stage_id": sales_stage_id,
                "opportunity_owner_id": opportunity_owner_id,
                "q": q,
            },
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.create")
        return opportunity_service.create_opportunity(db, ctx, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, ctx, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.update")
        return opportunity_service.update_opportunity(db, ctx, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_update_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/declare-lost", response_model=OpportunityRead)
def declare_opportunity_lost(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityDeclareLostRequest | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.update")
        return opportunity_service.declare_lost(db, ctx, opportunity_id, dto or OpportunityDeclareLostRequest())
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_declare_lost_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}")
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        require_permission(ctx, "crm.opportunities.delete")
        opportunity_service.delete_opportunity(db, ctx, opportunity_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_delete_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/items", response_model=list[OpportunityItemRead])
def list_opportunity_items(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[OpportunityItemRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.read")
        return opportunity_service.list_items(db, ctx, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_item_list_failed")


@opportunities_router.post(
    "/opportunities/{opportunity_id}/items",
    response_model=OpportunityItemRead,
    status_code=status.HTTP_201_CREATED,
)
def add_opportunity_item(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityItemCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityItemRead | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.update")
        return opportunity_service.add_item(db, ctx, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_item_create_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}/items/{item_id}", response_model=OpportunityItemRead)
def update_opportunity_item(
    request: Request,
    opportunity_id: uuid.UUID,
    item_id: uuid.UUID,
    dto: OpportunityItemUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> OpportunityItemRead | JSONResponse:
    try:
        require_permission(ctx, "crm.opportunities.update")
        return opportunity_service.update_item(db, ctx, opportunity_id, item_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_item_update_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}/items/{item_id}")
def delete_opportunity_item(
    request: Request,
    opportunity_id: uuid.UUID,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        require_permission(ctx, "crm.opportunities.update")
        opportunity_service.delete_item(db, ctx, opportunity_id, item_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_item_delete_failed")


@contracts_router.get("/contracts", response_model=list[ContractRead])
def list_contracts(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    party_type: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ContractRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.read")
        return contract_service.list_contracts(
            db,
            ctx,
            filters={"status": status_filter, "party_type": party_type, "q": q},
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_list_failed")


@contracts_router.post("/contracts", response_model=ContractRead, status_code=status.HTTP_201_CREATED)
def create_contract(
    request: Request,
    dto: ContractCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ContractRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.create")
        return contract_service.create_contract(db, ctx, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_create_failed")


@contracts_router.get("/contracts/{contract_id}", response_model=ContractRead)
def get_contract(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ContractRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.read")
        return contract_service.get_contract(db, ctx, contract_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_get_failed")


@contracts_router.patch("/contracts/{contract_id}", response_model=ContractRead)
def update_contract(
    request: Request,
    contract_id: uuid.UUID,
    dto: ContractUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ContractRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.update")
        return contract_service.update_contract(db, ctx, contract_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_update_failed")


@contracts_router.post("/contracts/{contract_id}/sign", response_model=ContractRead)
def sign_contract(
    request: Request,
    contract_id: uuid.UUID,
    dto: ContractSignRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ContractRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.sign")
        return contract_service.sign_contract(db, ctx, contract_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_sign_failed")


@contracts_router.post("/contracts/{contract_id}/cancel", response_model=ContractRead)
def cancel_contract(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ContractRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.cancel")
        return contract_service.cancel_contract(db, ctx, contract_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_cancel_failed")


@contracts_router.delete("/contracts/{contract_id}")
def delete_contract(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        require_permission(ctx, "crm.contracts.delete")
        contract_service.delete_contract(db, ctx, contract_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_delete_failed")


@contracts_router.get("/contracts/{contract_id}/checklist", response_model=list[ChecklistItemRead])
def list_contract_checklist(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ChecklistItemRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.read")
        return contract_service.list_checklist(db, ctx, contract_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_checklist_list_failed")


@contracts_router.post(
    "/contracts/{contract_id}/checklist",
    response_model=ChecklistItemRead,
    status_code=status.HTTP_201_CREATED,
)
def add_contract_checklist_row(
    request: Request,
    contract_id: uuid.UUID,
    dto: ChecklistItemCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ChecklistItemRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.update")
        return contract_service.add_checklist_row(db, ctx, contract_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_checklist_create_failed")


@contracts_router.patch("/contracts/{contract_id}/checklist/{row_id}", response_model=ChecklistItemRead)
def update_contract_checklist_row(
    request: Request,
    contract_id: uuid.UUID,
    row_id: uuid.UUID,
    dto: ChecklistItemUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ChecklistItemRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contracts.update")
        return contract_service.update_checklist_row(db, ctx, contract_id, row_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_checklist_update_failed")


@contracts_router.delete("/contracts/{contract_id}/checklist/{row_id}")
def delete_contract_checklist_row(
    request: Request,
    contract_id: uuid.UUID,
    row_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        require_permission(ctx, "crm.contracts.update")
        contract_service.delete_checklist_row(db, ctx, contract_id, row_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failure(request, exc, "crm_contract_checklist_delete_failed")
