from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, model_validator

from coupongen.domain.models import Tenant


ROLE_ADMIN = "admin"
ROLE_STORE = "store"
ROLE_SUPERADMIN = "superadmin"
ROLES = frozenset({ROLE_ADMIN, ROLE_STORE, ROLE_SUPERADMIN})


class Principal(BaseModel):
    # Session identity; immutable for the lifetime of a session.
    model_config = {"frozen": True}

    id: int | None = None
    username: str
    role: str
    tenant_id: int | None = None
    tenant_slug: str | None = None
    is_superadmin: bool = False

    @model_validator(mode="after")
    def _check_tenant_affiliation(self) -> "Principal":
        if self.role not in ROLES:
            raise ValueError(f"Unsupported role: {self.role}")
        # The superadmin flag is tied to the role, never to a username.
        if self.is_superadmin != (self.role == ROLE_SUPERADMIN):
            raise ValueError("is_superadmin must match the superadmin role")
        if self.tenant_id is None and not self.is_superadmin:
            raise ValueError("tenant_id is required for non-superadmin principals")
        return self

    def to_session(self) -> dict[str, Any]:
        return self.model_dump()


@dataclass(frozen=True)
class ResolvedTenant:
    """Snapshot of a tenant row as read for the current request."""

    id: int
    slug: str
    name: str
    email_from_name: str | None = None
    email_from_address: str | None = None
    custom_domain: str | None = None
    mail_provider_domain: str | None = None
    mail_provider_region: str | None = None

    @classmethod
    def from_row(cls, row: Tenant) -> "ResolvedTenant":
        return cls(
            id=row.id,
            slug=row.slug,
            name=row.name,
            email_from_name=row.email_from_name,
            email_from_address=row.email_from_address,
            custom_domain=row.custom_domain,
            mail_provider_domain=row.mail_provider_domain,
            mail_provider_region=row.mail_provider_region,
        )
