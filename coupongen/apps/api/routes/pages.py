from __future__ import annotations

from html import escape

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from coupongen.apps.api.deps import get_request_tenant, require_admin, require_store, require_tenant_session
from coupongen.domain.identity import Principal, ResolvedTenant


router = APIRouter(prefix="/t/{tenant_slug}", tags=["pages"], include_in_schema=False)


def _shell(tenant: ResolvedTenant, principal: Principal, section: str) -> HTMLResponse:
    # Minimal page shell; the real UI is served separately.
    body = (
        "<!doctype html><html><head>"
        f"<title>{escape(tenant.name)} | {section}</title>"
        f'<meta name="tenant-slug" content="{escape(tenant.slug)}">'
        "</head><body>"
        f'<main data-section="{section}" data-user="{escape(principal.username)}"></main>'
        "</body></html>"
    )
    return HTMLResponse(body)


@router.get("/admin", dependencies=[Depends(require_tenant_session), Depends(require_admin)])
async def admin_page(
    tenant: ResolvedTenant = Depends(get_request_tenant),
    principal: Principal = Depends(require_tenant_session),
) -> HTMLResponse:
    return _shell(tenant, principal, "admin")


@router.get("/store", dependencies=[Depends(require_tenant_session), Depends(require_store)])
async def store_page(
    tenant: ResolvedTenant = Depends(get_request_tenant),
    principal: Principal = Depends(require_tenant_session),
) -> HTMLResponse:
    return _shell(tenant, principal, "store")
