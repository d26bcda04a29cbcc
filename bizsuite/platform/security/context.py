from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class TenantContext:
    """Acting-user context threaded through every tenant-scoped read and write."""

    user_id: str
    org_id: str | None = None
    company_id: str | None = None
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
