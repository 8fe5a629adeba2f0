from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.apps.api.deps import get_db, get_limiter, require_csrf, require_superadmin
from coupongen.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from coupongen.persistence.repos.tenants import list_tenants
from coupongen.services.rate_limit import AdmissionLimiter
from coupongen.services.telemetry import counters_snapshot, request_summary


router = APIRouter(
    prefix="/api/superadmin",
    tags=["superadmin"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_superadmin), Depends(require_csrf)],
)


class TenantSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    name: str
    custom_domain: str | None = None
    created_at: datetime | None = None


class AdmissionStatus(BaseModel):
    rate_limit_enabled: bool
    sweeper_running: bool
    ledger_sizes: dict[str, int]
    counters: dict[str, int]
    requests_5m: dict[str, float | int | None]


@router.get("/tenants", response_model=list[TenantSummary])
async def superadmin_list_tenants(db: AsyncSession = Depends(get_db)) -> list[TenantSummary]:
    tenants = await list_tenants(db)
    return [TenantSummary.model_validate(tenant) for tenant in tenants]


@router.get("/admission", response_model=AdmissionStatus)
async def admission_status(limiter: AdmissionLimiter = Depends(get_limiter)) -> AdmissionStatus:
    # Sizes and counters only; per-key counts and thresholds stay private.
    return AdmissionStatus(
        rate_limit_enabled=limiter.enabled,
        sweeper_running=limiter.running,
        ledger_sizes=limiter.sizes(),
        counters={key: value for key, value in counters_snapshot().items() if key.startswith("admission_")},
        requests_5m=request_summary(300),
    )
