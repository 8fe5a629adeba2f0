from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from coupongen.core.errors import TenantNotFoundError, TenantStoreUnavailableError
from coupongen.domain.identity import Principal
from coupongen.domain.models import Tenant
from coupongen.persistence.db import SessionLocal
from coupongen.services import tenancy
from coupongen.tests.utils.seed import create_test_tenant


@pytest.mark.asyncio
async def test_resolve_unknown_slug_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(TenantNotFoundError):
            await tenancy.resolve_tenant(session, "does-not-exist")


@pytest.mark.asyncio
async def test_resolve_reads_fresh_tenant_settings() -> None:
    tenant = await create_test_tenant(name="Before")
    async with SessionLocal() as session:
        first = await tenancy.resolve_tenant(session, tenant.slug)
        assert first.name == "Before"
        async with SessionLocal() as writer:
            await writer.execute(
                update(Tenant).where(Tenant.id == tenant.id).values(name="After", email_from_name="Shop")
            )
            await writer.commit()
        await session.rollback()
        second = await tenancy.resolve_tenant(session, tenant.slug)
    assert second.id == first.id
    assert second.name == "After"
    assert second.email_from_name == "Shop"


@pytest.mark.asyncio
async def test_store_failure_is_unavailable_not_missing(monkeypatch) -> None:
    async def _broken(_session, _slug):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(tenancy, "get_tenant_by_slug", _broken)
    async with SessionLocal() as session:
        with pytest.raises(TenantStoreUnavailableError):
            await tenancy.resolve_tenant(session, "acme")


@pytest.mark.asyncio
async def test_slow_store_times_out_as_unavailable(monkeypatch) -> None:
    async def _hang(_session, _slug):
        await asyncio.sleep(5)

    monkeypatch.setenv("TENANT_LOOKUP_TIMEOUT_S", "0.05")
    monkeypatch.setattr(tenancy, "get_tenant_by_slug", _hang)
    async with SessionLocal() as session:
        with pytest.raises(TenantStoreUnavailableError):
            await tenancy.resolve_tenant(session, "acme")


@pytest.mark.asyncio
async def test_legacy_resolution_order() -> None:
    acme = await create_test_tenant()
    globex = await create_test_tenant()
    principal = Principal(id=1, username="ana", role="admin", tenant_id=acme.id, tenant_slug=acme.slug)

    async with SessionLocal() as session:
        request_tenant = await tenancy.resolve_tenant(session, globex.slug)
        # An already-resolved tenant wins.
        assert (
            await tenancy.resolve_legacy_tenant_id(
                session=session, request_tenant=request_tenant, referer=None, principal=principal
            )
            == globex.id
        )
        # Then a /t/{slug} Referer.
        assert (
            await tenancy.resolve_legacy_tenant_id(
                session=session,
                request_tenant=None,
                referer=f"http://test/t/{globex.slug}/admin",
                principal=principal,
            )
            == globex.id
        )
        # Unknown Referer slugs fall through to the session.
        assert (
            await tenancy.resolve_legacy_tenant_id(
                session=session, request_tenant=None, referer="http://test/t/nope/admin", principal=principal
            )
            == acme.id
        )
        # Nothing to go on.
        assert (
            await tenancy.resolve_legacy_tenant_id(
                session=session, request_tenant=None, referer="http://test/admin", principal=None
            )
            is None
        )
