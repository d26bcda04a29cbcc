from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for tenant scope enforcement failures."""


class TenantScopeError(AuthorizationError):
    """Raised when a write targets a tenant other than the caller's."""

    def __init__(self, resource: str, reason: str) -> None:
        self.resource = resource
        self.reason = reason
        super().__init__(f"{reason} for resource '{resource}'")
