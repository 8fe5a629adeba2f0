from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.domain.models import Coupon
from coupongen.persistence.guards import require_tenant_id, tenant_predicate


async def get_coupon(session: AsyncSession, tenant_id: int | None, code: str) -> Coupon | None:
    result = await session.execute(
        select(Coupon).where(tenant_predicate(Coupon, tenant_id), Coupon.code == code)
    )
    return result.scalar_one_or_none()


async def create_coupon(
    session: AsyncSession,
    tenant_id: int | None,
    *,
    campaign_id: int,
    code: str,
    email: str,
) -> Coupon:
    coupon = Coupon(
        tenant_id=require_tenant_id(tenant_id),
        campaign_id=campaign_id,
        code=code,
        email=email,
        status="active",
    )
    session.add(coupon)
    await session.flush()
    return coupon


async def redeem_coupon(session: AsyncSession, tenant_id: int | None, code: str) -> Coupon | None:
    # Returns None when the code is unknown for this tenant; already redeemed coupons are returned unchanged.
    coupon = await get_coupon(session, tenant_id, code)
    if coupon is None or coupon.status == "redeemed":
        return coupon
    coupon.status = "redeemed"
    coupon.redeemed_at = datetime.now(timezone.utc)
    return coupon
