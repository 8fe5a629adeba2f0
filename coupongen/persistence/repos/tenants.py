from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.domain.models import Tenant


async def get_tenant_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    # Always a fresh read so tenant-settings changes show up on the next request.
    result = await session.execute(
        select(Tenant)
        .where(Tenant.slug == slug)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_tenant_id_by_slug(session: AsyncSession, slug: str) -> int | None:
    result = await session.execute(select(Tenant.id).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def slug_exists(session: AsyncSession, slug: str) -> bool:
    return await get_tenant_id_by_slug(session, slug) is not None


async def create_tenant(session: AsyncSession, *, slug: str, name: str) -> Tenant:
    tenant = Tenant(slug=slug, name=name)
    session.add(tenant)
    # Flush to obtain the generated id for the first admin user.
    await session.flush()
    return tenant


async def list_tenants(session: AsyncSession) -> list[Tenant]:
    result = await session.execute(select(Tenant).order_by(Tenant.id))
    return list(result.scalars().all())
