from __future__ import annotations

import logging
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.apps.api.response import is_api_path
from coupongen.core.errors import (
    AdmissionRedirect,
    ForbiddenError,
    TenantMismatchError,
    TenantUnresolvedError,
    UnauthenticatedError,
)
from coupongen.domain.identity import ROLE_ADMIN, ROLE_STORE, ROLE_SUPERADMIN, Principal, ResolvedTenant
from coupongen.persistence.db import get_session
from coupongen.services.auth.roles import normalize_role, role_allows
from coupongen.services.auth.sessions import SessionState, SessionStore
from coupongen.services.csrf import ForgeryGuard
from coupongen.services.rate_limit import AdmissionLimiter
from coupongen.services.tenancy import (
    ACCESS_ALLOW,
    ACCESS_REDIRECT,
    ACCESS_REDIRECT_LOGIN,
    check_tenant_access,
    resolve_legacy_tenant_id,
    resolve_tenant,
)


logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_limiter(request: Request) -> AdmissionLimiter:
    return request.app.state.limiter


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_forgery_guard(request: Request) -> ForgeryGuard:
    return request.app.state.forgery_guard


def get_session_state(request: Request) -> SessionState | None:
    # Loaded by the session middleware; None when the client has no live session.
    return getattr(request.state, "session", None)


def ensure_session_state(request: Request) -> SessionState:
    state = get_session_state(request)
    if state is None:
        state = get_session_store(request).create()
        request.state.session = state
    return state


def get_optional_principal(request: Request) -> Principal | None:
    state = get_session_state(request)
    principal = state.principal if state is not None else None
    request.state.principal = principal
    return principal


def client_ip(request: Request) -> str:
    # Proxy headers are applied by the ASGI server (uvicorn --proxy-headers), not here.
    return request.client.host if request.client else "unknown"


def _unauthenticated(request: Request) -> Exception:
    if is_api_path(request.url.path):
        return UnauthenticatedError()
    return AdmissionRedirect(LOGIN_PATH)


async def get_request_tenant(
    request: Request,
    tenant_slug: str,
    db: AsyncSession = Depends(get_db),
) -> ResolvedTenant:
    # Resolve /t/{tenant_slug} and pin it on the request for every later guard.
    tenant = await resolve_tenant(db, tenant_slug, path=request.url.path)
    request.state.tenant = tenant
    request.state.tenant_slug = tenant.slug
    return tenant


async def require_tenant_session(
    request: Request,
    tenant: ResolvedTenant = Depends(get_request_tenant),
    principal: Principal | None = Depends(get_optional_principal),
) -> Principal:
    decision = check_tenant_access(
        tenant=tenant,
        principal=principal,
        path=request.url.path,
        query=request.url.query,
    )
    if decision.outcome == ACCESS_ALLOW and principal is not None:
        return principal
    if decision.outcome == ACCESS_REDIRECT_LOGIN:
        raise _unauthenticated(request)
    if decision.outcome == ACCESS_REDIRECT and decision.location:
        logger.info(
            "tenant_redirect from_slug=%s to=%s user=%s",
            tenant.slug,
            decision.location,
            principal.username if principal else None,
        )
        raise AdmissionRedirect(decision.location)
    logger.warning(
        "tenant_mismatch slug=%s user=%s principal_tenant=%s",
        tenant.slug,
        principal.username if principal else None,
        principal.tenant_id if principal else None,
    )
    raise TenantMismatchError()


def require_role(role_name: str) -> Callable[..., Awaitable[Principal]]:
    # Dependency factory to enforce RBAC at the route level.
    required = normalize_role(role_name)

    async def _dependency(
        request: Request,
        principal: Principal | None = Depends(get_optional_principal),
    ) -> Principal:
        if principal is None:
            raise _unauthenticated(request)
        if not role_allows(role=principal.role, required=required):
            logger.info("role_forbidden user=%s role=%s required=%s", principal.username, principal.role, required)
            raise ForbiddenError("Insufficient role for this operation")
        return principal

    return _dependency


require_admin = require_role(ROLE_ADMIN)
require_store = require_role(ROLE_STORE)
require_superadmin = require_role(ROLE_SUPERADMIN)


async def require_csrf(
    request: Request,
    guard: ForgeryGuard = Depends(get_forgery_guard),
) -> None:
    # Only mutating requests on protected paths carry the token; exemptions were compiled once.
    if not guard.requires_token(request.method, request.url.path):
        return
    guard.verify(get_session_state(request), request.headers.get(guard.header_name))


async def require_legacy_tenant_id(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal | None = Depends(get_optional_principal),
) -> int:
    # Unprefixed routes hard-fail when no tenant resolves; no unscoped fallback exists.
    tenant_id = await resolve_legacy_tenant_id(
        session=db,
        request_tenant=getattr(request.state, "tenant", None),
        referer=request.headers.get("referer"),
        principal=principal,
    )
    if tenant_id is None:
        raise TenantUnresolvedError()
    # A Referer may name another tenant; the session's own tenant still bounds access.
    if principal is not None and not principal.is_superadmin and principal.tenant_id != tenant_id:
        logger.warning("legacy_tenant_mismatch user=%s resolved_tenant=%s", principal.username, tenant_id)
        raise TenantMismatchError()
    return tenant_id
