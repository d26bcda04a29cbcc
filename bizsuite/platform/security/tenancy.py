from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import false
from sqlalchemy.sql import Select

from bizsuite import audit
from bizsuite.core.config import get_settings
from bizsuite.metrics import observe_tenant_scope_denied
from bizsuite.platform.security.context import TenantContext
from bizsuite.platform.security.errors import TenantScopeError


logger = logging.getLogger("bizsuite.security.tenancy")

TENANT_COLUMNS = ("org_id", "company_id")


def is_superadmin(ctx: TenantContext) -> bool:
    if ctx.is_super_admin:
        return True
    elevated = {item.lower() for item in get_settings().superadmin_roles}
    grants = {item.lower() for item in ctx.roles} | {item.lower() for item in ctx.permissions}
    return bool(elevated & grants)


def is_tenant_scoped(model: Any) -> bool:
    return model is not None and hasattr(model, "org_id") and hasattr(model, "company_id")


def scope(query: Select[Any], ctx: TenantContext) -> Select[Any]:
    """Constrain every tenant-scoped entity selected by ``query`` to the caller's tenant.

    Rows outside the caller's org (and company, when the caller has one) are
    filtered out, so lookups of foreign ids behave exactly like missing ids.
    A caller without an org sees nothing.
    """

    if is_superadmin(ctx):
        return query

    for description in query.column_descriptions:
        model = description.get("entity")
        if not is_tenant_scoped(model):
            continue
        if not ctx.org_id:
            query = query.where(false())
            continue
        query = query.where(model.org_id == ctx.org_id)
        if ctx.company_id:
            query = query.where(model.company_id == ctx.company_id)

    return query


def stamp_tenant(resource: str, payload: dict[str, Any], ctx: TenantContext) -> dict[str, Any]:
    """Return a copy of a create payload with ``org_id``/``company_id`` filled from ``ctx``."""

    stamped = dict(payload)
    elevated = is_superadmin(ctx)

    if not stamped.get("org_id"):
        if not ctx.org_id:
            _deny(resource, "create", ctx, reason="Tenant context required")
        stamped["org_id"] = ctx.org_id
    elif stamped["org_id"] != ctx.org_id and not elevated:
        _deny(resource, "create", ctx, reason="Out-of-tenant org_id", value=str(stamped["org_id"]))

    if not stamped.get("company_id"):
        stamped["company_id"] = ctx.company_id if stamped["org_id"] == ctx.org_id else None
    elif ctx.company_id and stamped["company_id"] != ctx.company_id and not elevated:
        _deny(resource, "create", ctx, reason="Out-of-tenant company_id", value=str(stamped["company_id"]))

    return stamped


def validate_tenant_write(
    resource: str,
    changes: dict[str, Any],
    ctx: TenantContext,
    *,
    existing_scope: dict[str, str | None],
    action: str = "update",
) -> None:
    """Reject mutations that would move an existing row to another tenant."""

    for column in TENANT_COLUMNS:
        if column not in changes:
            continue
        if changes[column] != existing_scope.get(column):
            _deny(resource, action, ctx, reason=f"{column} is immutable", value=str(changes[column]))


def _deny(resource: str, action: str, ctx: TenantContext, *, reason: str, value: str | None = None) -> None:
    observe_tenant_scope_denied(resource=resource, action=action)
    logger.warning(
        "tenant.scope_denied",
        extra={
            "resource": resource,
            "action": action,
            "org_id": ctx.org_id,
            "company_id": ctx.company_id,
            "user_id": ctx.user_id,
            "error": reason,
        },
    )
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.tenancy",
        entity_id="scope",
        action="tenancy.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "reason": reason,
            "value": value,
            "org_id": ctx.org_id,
            "company_id": ctx.company_id,
        },
        org_id=ctx.org_id,
        correlation_id=ctx.correlation_id,
    )
    raise TenantScopeError(resource, reason)
