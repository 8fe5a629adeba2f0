from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.apps.api.deps import (
    get_db,
    get_request_tenant,
    require_csrf,
    require_legacy_tenant_id,
    require_store,
    require_tenant_session,
)
from coupongen.apps.api.openapi import LEGACY_ERROR_RESPONSES, TENANT_ERROR_RESPONSES
from coupongen.domain.identity import Principal, ResolvedTenant
from coupongen.persistence.repos.coupons import get_coupon, redeem_coupon
from coupongen.services.audit import get_request_context, record_event


router = APIRouter(
    prefix="/t/{tenant_slug}/api/store",
    tags=["store"],
    responses=TENANT_ERROR_RESPONSES,
    dependencies=[Depends(require_tenant_session), Depends(require_store), Depends(require_csrf)],
)
legacy_router = APIRouter(
    prefix="/api/store",
    tags=["store", "legacy"],
    responses=LEGACY_ERROR_RESPONSES,
    dependencies=[Depends(require_store), Depends(require_csrf)],
)


class CouponResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    campaign_id: int
    email: str
    status: str
    created_at: datetime | None = None
    redeemed_at: datetime | None = None


def _coupon_not_found() -> HTTPException:
    # Codes owned by another tenant look exactly like unknown codes.
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "COUPON_NOT_FOUND", "message": "Coupon not found"},
    )


async def _lookup(db: AsyncSession, tenant_id: int, code: str) -> CouponResponse:
    coupon = await get_coupon(db, tenant_id, code.strip().upper())
    if coupon is None:
        raise _coupon_not_found()
    return CouponResponse.model_validate(coupon)


@router.get("/coupons/{code}", response_model=CouponResponse)
async def tenant_get_coupon(
    code: str,
    tenant: ResolvedTenant = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> CouponResponse:
    return await _lookup(db, tenant.id, code)


@router.post("/coupons/{code}/redeem", response_model=CouponResponse)
async def tenant_redeem_coupon(
    request: Request,
    code: str,
    tenant: ResolvedTenant = Depends(get_request_tenant),
    principal: Principal = Depends(require_tenant_session),
    db: AsyncSession = Depends(get_db),
) -> CouponResponse:
    normalized = code.strip().upper()
    existing = await get_coupon(db, tenant.id, normalized)
    if existing is None:
        raise _coupon_not_found()
    if existing.status == "redeemed":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "COUPON_ALREADY_REDEEMED", "message": "Coupon already redeemed"},
        )
    coupon = await redeem_coupon(db, tenant.id, normalized)
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
        actor_id=principal.id,
        actor_name=principal.username,
        actor_role=principal.role,
        event_type="coupon.redeemed",
        outcome="success",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"coupon_code": normalized},
    )
    await db.commit()
    return CouponResponse.model_validate(coupon)


@legacy_router.get("/coupons/{code}", response_model=CouponResponse)
async def legacy_get_coupon(
    code: str,
    tenant_id: int = Depends(require_legacy_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> CouponResponse:
    return await _lookup(db, tenant_id, code)
