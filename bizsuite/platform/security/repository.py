from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from bizsuite.platform.security.context import TenantContext
from bizsuite.platform.security.tenancy import scope, stamp_tenant, validate_tenant_write


class BaseRepository:
    resource = ""
    model: Any = None

    def apply_scope_query(self, query: Select[Any], ctx: TenantContext) -> Select[Any]:
        return scope(query, ctx)

    def stamp_create(self, payload: dict[str, Any], ctx: TenantContext) -> dict[str, Any]:
        return stamp_tenant(self.resource, payload, ctx)

    def validate_write_security(
        self,
        changes: dict[str, Any],
        ctx: TenantContext,
        *,
        existing: Any,
        action: str = "update",
    ) -> None:
        validate_tenant_write(
            self.resource,
            changes,
            ctx,
            existing_scope={"org_id": existing.org_id, "company_id": existing.company_id},
            action=action,
        )

    def get_scoped(self, session: Session, ctx: TenantContext, record_id: uuid.UUID) -> Any:
        return session.scalar(self.apply_scope_query(select(self.model).where(self.model.id == record_id), ctx))
