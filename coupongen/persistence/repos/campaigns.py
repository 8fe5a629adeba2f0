from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.domain.models import Campaign
from coupongen.persistence.guards import require_tenant_id, tenant_predicate


async def list_campaigns(session: AsyncSession, tenant_id: int | None) -> list[Campaign]:
    result = await session.execute(
        select(Campaign)
        .where(tenant_predicate(Campaign, tenant_id))
        .order_by(Campaign.created_at, Campaign.id)
    )
    return list(result.scalars().all())


async def create_campaign(
    session: AsyncSession,
    tenant_id: int | None,
    *,
    campaign_code: str,
    name: str,
    discount_type: str,
    discount_value: float,
) -> Campaign:
    campaign = Campaign(
        tenant_id=require_tenant_id(tenant_id),
        campaign_code=campaign_code,
        name=name,
        discount_type=discount_type,
        discount_value=discount_value,
        is_active=True,
    )
    session.add(campaign)
    await session.flush()
    return campaign


async def get_active_campaign_by_code(
    session: AsyncSession, tenant_id: int | None, campaign_code: str
) -> Campaign | None:
    # The code is globally unique, but the row must still belong to the request's tenant.
    result = await session.execute(
        select(Campaign).where(
            tenant_predicate(Campaign, tenant_id),
            Campaign.campaign_code == campaign_code,
            Campaign.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()
