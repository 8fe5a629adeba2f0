from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.domain.models import AuthUser, Tenant


async def get_active_user_with_tenant(
    session: AsyncSession, *, username: str, user_type: str
) -> tuple[AuthUser, Tenant | None] | None:
    # Join the tenant so the session gets the real slug of the user's tenant.
    result = await session.execute(
        select(AuthUser, Tenant)
        .outerjoin(Tenant, Tenant.id == AuthUser.tenant_id)
        .where(
            AuthUser.username == username,
            AuthUser.user_type == user_type,
            AuthUser.is_active.is_(True),
        )
        .order_by(AuthUser.id)
    )
    row = result.first()
    if row is None:
        return None
    user, tenant = row
    return user, tenant


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    password_hash: str,
    user_type: str,
    tenant_id: int | None,
) -> AuthUser:
    user = AuthUser(
        username=username,
        password_hash=password_hash,
        user_type=user_type,
        is_active=True,
        tenant_id=tenant_id,
    )
    session.add(user)
    await session.flush()
    return user


async def mark_login(session: AsyncSession, user_id: int, *, password_hash: str | None = None) -> None:
    values: dict[str, object] = {"last_login": datetime.now(timezone.utc)}
    if password_hash is not None:
        values["password_hash"] = password_hash
    await session.execute(update(AuthUser).where(AuthUser.id == user_id).values(**values))
