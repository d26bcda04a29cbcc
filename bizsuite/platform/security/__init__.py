from bizsuite.platform.security.context import TenantContext
from bizsuite.platform.security.errors import AuthorizationError, TenantScopeError
from bizsuite.platform.security.repository import BaseRepository
from bizsuite.platform.security.tenancy import (
    is_superadmin,
    is_tenant_scoped,
    scope,
    stamp_tenant,
    validate_tenant_write,
)

__all__ = [
    "TenantContext",
    "AuthorizationError",
    "TenantScopeError",
    "BaseRepository",
    "is_superadmin",
    "is_tenant_scoped",
    "scope",
    "stamp_tenant",
    "validate_tenant_write",
]
