from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import re
from urllib.parse import urlsplit

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.core.config import get_settings
from coupongen.core.errors import TenantNotFoundError, TenantStoreUnavailableError
from coupongen.domain.identity import Principal, ResolvedTenant
from coupongen.persistence.repos.tenants import get_tenant_by_slug, get_tenant_id_by_slug


logger = logging.getLogger(__name__)

ACCESS_ALLOW = "allow"
ACCESS_REDIRECT_LOGIN = "redirect_login"
ACCESS_REDIRECT = "redirect"
ACCESS_DENY = "deny"

_TENANT_PATH_RE = re.compile(r"^/t/([^/]+)")


@dataclass(frozen=True)
class TenantAccessDecision:
    outcome: str
    location: str | None = None


def tenant_slug_from_path(path: str) -> str | None:
    match = _TENANT_PATH_RE.match(path)
    return match.group(1) if match else None


def referer_tenant_slug(referer: str | None) -> str | None:
    if not referer:
        return None
    # Only the path counts; a /t/ segment inside the query string is ignored.
    match = _TENANT_PATH_RE.match(urlsplit(referer).path)
    return match.group(1) if match else None


async def resolve_tenant(session: AsyncSession, slug: str, *, path: str | None = None) -> ResolvedTenant:
    """Load the tenant addressed by ``slug`` fresh from the store.

    Unknown slugs raise ``TenantNotFoundError``. Store failures, including a
    lookup that exceeds ``tenant_lookup_timeout_s``, raise
    ``TenantStoreUnavailableError`` so outages are never reported as 404.
    """
    timeout_s = get_settings().tenant_lookup_timeout_s
    try:
        row = await asyncio.wait_for(get_tenant_by_slug(session, slug), timeout=timeout_s)
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        logger.error("tenant_lookup_failed slug=%s path=%s", slug, path, exc_info=exc)
        raise TenantStoreUnavailableError() from exc
    if row is None:
        logger.info("tenant_not_found slug=%s path=%s", slug, path)
        raise TenantNotFoundError()
    return ResolvedTenant.from_row(row)


def rewrite_tenant_path(path: str, slug: str, *, query: str = "") -> str:
    # Only the leading /t/{slug} segment is replaced; the rest of the path and the query survive.
    rewritten = _TENANT_PATH_RE.sub(lambda _match: f"/t/{slug}", path, count=1)
    if query:
        return f"{rewritten}?{query}"
    return rewritten


def check_tenant_access(
    *,
    tenant: ResolvedTenant,
    principal: Principal | None,
    path: str,
    query: str = "",
) -> TenantAccessDecision:
    """Decide whether ``principal`` may act inside ``tenant``.

    Association is an explicit comparison of tenant id, then slug; a principal
    with no tenant affiliation is never allowed by default. Principals bound to
    another tenant are sent to the same page under their own slug.
    """
    if principal is None:
        return TenantAccessDecision(ACCESS_REDIRECT_LOGIN, location="/login")
    if principal.is_superadmin:
        return TenantAccessDecision(ACCESS_ALLOW)
    if principal.tenant_id is not None and principal.tenant_id == tenant.id:
        return TenantAccessDecision(ACCESS_ALLOW)
    if principal.tenant_slug and principal.tenant_slug == tenant.slug:
        return TenantAccessDecision(ACCESS_ALLOW)
    if principal.tenant_slug:
        # Without a /t/{slug} prefix there is nothing to rewrite.
        if tenant_slug_from_path(path) is None:
            return TenantAccessDecision(ACCESS_DENY)
        return TenantAccessDecision(
            ACCESS_REDIRECT,
            location=rewrite_tenant_path(path, principal.tenant_slug, query=query),
        )
    return TenantAccessDecision(ACCESS_DENY)


async def resolve_legacy_tenant_id(
    *,
    session: AsyncSession,
    request_tenant: ResolvedTenant | None,
    referer: str | None,
    principal: Principal | None,
) -> int | None:
    # Resolved tenant, then a /t/{slug} Referer, then the session; None when nothing applies.
    if request_tenant is not None:
        return request_tenant.id
    slug = referer_tenant_slug(referer)
    if slug:
        try:
            tenant_id = await get_tenant_id_by_slug(session, slug)
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("legacy_tenant_referer_lookup_failed slug=%s", slug, exc_info=exc)
            tenant_id = None
        if tenant_id is not None:
            return tenant_id
    if principal is not None and principal.tenant_id is not None:
        return principal.tenant_id
    return None
