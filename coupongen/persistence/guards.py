from __future__ import annotations

from typing import Any


class TenantPredicateError(RuntimeError):
    """A tenant-scoped query was built without an authoritative tenant id."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


def require_tenant_id(tenant_id: int | None) -> int:
    # Reject missing, boolean and non-positive ids; there is no implicit tenant 0.
    if tenant_id is None or isinstance(tenant_id, bool) or not isinstance(tenant_id, int) or tenant_id <= 0:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(model: Any, tenant_id: int | None) -> Any:
    # Every tenant-scoped repository filter is built here.
    return model.tenant_id == require_tenant_id(tenant_id)
