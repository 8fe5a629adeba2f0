from __future__ import annotations

import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.apps.api.deps import (
    client_ip,
    ensure_session_state,
    get_db,
    get_limiter,
    get_optional_principal,
    get_request_tenant,
    get_session_state,
    get_session_store,
)
from coupongen.apps.api.openapi import DEFAULT_ERROR_RESPONSES, RATE_LIMITED_RESPONSES
from coupongen.core.errors import UnauthenticatedError
from coupongen.domain.identity import ROLE_ADMIN, ROLE_STORE, ROLE_SUPERADMIN, Principal
from coupongen.persistence.repos.tenants import create_tenant, slug_exists
from coupongen.persistence.repos.users import create_user, get_active_user_with_tenant, mark_login
from coupongen.services.audit import get_request_context, record_event
from coupongen.services.auth.passwords import hash_password_async, needs_upgrade, verify_password_async
from coupongen.services.auth.roles import normalize_role
from coupongen.services.csrf import issue_token
from coupongen.services.rate_limit import AdmissionLimiter


logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"], responses={**DEFAULT_ERROR_RESPONSES, **RATE_LIMITED_RESPONSES})

_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=256)
    user_type: str = ROLE_ADMIN


class SuperadminLoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=256)


class SignupRequest(BaseModel):
    tenant_name: str = Field(min_length=1, max_length=200)
    tenant_slug: str | None = Field(default=None, max_length=64)
    admin_username: str = Field(min_length=1, max_length=128)
    admin_password: str = Field(min_length=8, max_length=256)


class SessionResponse(BaseModel):
    user: Principal
    csrf_token: str
    redirect: str | None = None


class CsrfTokenResponse(BaseModel):
    csrf_token: str


def slugify(value: str) -> str:
    # Lowercase, collapse anything outside [a-z0-9] into single dashes.
    return _SLUG_INVALID_RE.sub("-", value.strip().lower()).strip("-")[:64]


def _home_path(principal: Principal) -> str:
    if principal.is_superadmin or not principal.tenant_slug:
        return "/superadmin"
    section = "store" if principal.role == ROLE_STORE else "admin"
    return f"/t/{principal.tenant_slug}/{section}"


def _start_session(request: Request, principal: Principal) -> SessionResponse:
    # Regenerate on every login: a fresh id and a fresh forgery token.
    store = get_session_store(request)
    state = store.regenerate(get_session_state(request))
    state.set_principal(principal)
    request.state.session = state
    request.state.principal = principal
    token = issue_token(state)
    return SessionResponse(user=principal, csrf_token=token, redirect=_home_path(principal))


async def _authenticate(
    request: Request,
    db: AsyncSession,
    limiter: AdmissionLimiter,
    *,
    username: str,
    password: str,
    user_type: str,
) -> Principal:
    ip = client_ip(request)
    limiter.check_login(ip)
    row = await get_active_user_with_tenant(db, username=username, user_type=user_type)
    user, tenant = row if row is not None else (None, None)
    if user is None or not await verify_password_async(password, user.password_hash):
        limiter.record_login_failure(ip)
        request_ctx = get_request_context(request)
        await record_event(
            session=db,
            tenant_id=user.tenant_id if user else None,
            actor_name=username,
            actor_role=user_type,
            event_type="auth.login.failure",
            outcome="failure",
            request_id=request_ctx["request_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            error_code="AUTH_UNAUTHORIZED",
            commit=True,
        )
        raise UnauthenticatedError("Invalid credentials")

    limiter.record_login_success(ip)
    upgraded_hash = await hash_password_async(password) if needs_upgrade(user.password_hash) else None
    if upgraded_hash is not None:
        logger.info("password_hash_upgraded user_id=%s", user.id)
    await mark_login(db, user.id, password_hash=upgraded_hash)
    principal = Principal(
        id=user.id,
        username=user.username,
        role=user.user_type,
        tenant_id=user.tenant_id,
        tenant_slug=tenant.slug if tenant is not None else None,
        is_superadmin=user.user_type == ROLE_SUPERADMIN,
    )
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        tenant_slug=principal.tenant_slug,
        actor_id=principal.id,
        actor_name=principal.username,
        actor_role=principal.role,
        event_type="auth.login.success",
        outcome="success",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
    await db.commit()
    return principal


@router.post("/api/login", response_model=SessionResponse)
async def login(
    request: Request,
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
    limiter: AdmissionLimiter = Depends(get_limiter),
) -> SessionResponse:
    try:
        user_type = normalize_role(payload.user_type)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    if user_type == ROLE_SUPERADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": "Use /api/superadmin/login"},
        )
    principal = await _authenticate(
        request, db, limiter, username=payload.username, password=payload.password, user_type=user_type
    )
    return _start_session(request, principal)


@router.post("/api/superadmin/login", response_model=SessionResponse)
async def superadmin_login(
    request: Request,
    payload: SuperadminLoginRequest,
    db: AsyncSession = Depends(get_db),
    limiter: AdmissionLimiter = Depends(get_limiter),
) -> SessionResponse:
    principal = await _authenticate(
        request, db, limiter, username=payload.username, password=payload.password, user_type=ROLE_SUPERADMIN
    )
    return _start_session(request, principal)


@router.post("/api/signup", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    request: Request,
    payload: SignupRequest,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    slug = slugify(payload.tenant_slug or payload.tenant_name)
    if not slug:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_SLUG_INVALID", "message": "Tenant slug must contain letters or digits"},
        )
    conflict = HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"code": "TENANT_SLUG_TAKEN", "message": "Tenant slug already exists"},
    )
    if await slug_exists(db, slug):
        raise conflict
    password_hash = await hash_password_async(payload.admin_password)
    try:
        tenant = await create_tenant(db, slug=slug, name=payload.tenant_name.strip())
        user = await create_user(
            db,
            username=payload.admin_username,
            password_hash=password_hash,
            user_type=ROLE_ADMIN,
            tenant_id=tenant.id,
        )
        await db.commit()
    except IntegrityError as exc:
        # Concurrent signups can race past the existence check.
        await db.rollback()
        raise conflict from exc
    logger.info("tenant_signup slug=%s tenant_id=%s", tenant.slug, tenant.id)
    principal = Principal(
        id=user.id,
        username=user.username,
        role=ROLE_ADMIN,
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
    )
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
        actor_id=user.id,
        actor_name=user.username,
        actor_role=ROLE_ADMIN,
        event_type="tenant.signup",
        outcome="success",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        commit=True,
    )
    return _start_session(request, principal)


@router.post("/api/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(request: Request) -> None:
    get_session_store(request).destroy(get_session_state(request))
    request.state.session = None


@router.get("/api/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(request: Request) -> CsrfTokenResponse:
    return CsrfTokenResponse(csrf_token=issue_token(ensure_session_state(request)))


@router.get(
    "/t/{tenant_slug}/api/csrf-token",
    response_model=CsrfTokenResponse,
    dependencies=[Depends(get_request_tenant)],
)
async def tenant_csrf_token(request: Request) -> CsrfTokenResponse:
    # Same session token; the tenant lookup only confirms the slug exists.
    return CsrfTokenResponse(csrf_token=issue_token(ensure_session_state(request)))


@router.get("/api/session", response_model=Principal)
async def current_session(principal: Principal | None = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise UnauthenticatedError()
    return principal
