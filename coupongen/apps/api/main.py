from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from coupongen.apps.api.errors import (
    admission_redirect_handler,
    coupongen_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from coupongen.apps.api.routes.admin import legacy_router as admin_legacy_router
from coupongen.apps.api.routes.admin import router as admin_router
from coupongen.apps.api.routes.auth import router as auth_router
from coupongen.apps.api.routes.health import router as health_router
from coupongen.apps.api.routes.pages import router as pages_router
from coupongen.apps.api.routes.public import router as public_router
from coupongen.apps.api.routes.store import legacy_router as store_legacy_router
from coupongen.apps.api.routes.store import router as store_router
from coupongen.apps.api.routes.superadmin import router as superadmin_router
from coupongen.core.config import get_settings
from coupongen.core.errors import AdmissionRedirect, CouponGenError
from coupongen.core.logging import configure_logging
from coupongen.persistence.db import create_schema
from coupongen.persistence.guards import TenantPredicateError
from coupongen.services.auth.sessions import SessionStore
from coupongen.services.csrf import ForgeryGuard
from coupongen.services.rate_limit import AdmissionLimiter
from coupongen.services.telemetry import record_request


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if get_settings().db_create_schema:
        await create_schema()
        logger.info("db_schema_ensured")
    # The sweep task lives exactly as long as the server; SIGINT/SIGTERM shutdown cancels it.
    limiter: AdmissionLimiter = app.state.limiter
    await limiter.start()
    try:
        yield
    finally:
        await limiter.stop()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="CouponGen API", lifespan=lifespan)

    # Process singletons shared by every request on this event loop.
    session_store = SessionStore(ttl_s=settings.session_ttl_s)
    app.state.session_store = session_store
    app.state.limiter = AdmissionLimiter(settings=settings, sweep_hooks=(session_store.purge_expired,))
    app.state.forgery_guard = ForgeryGuard.build(header_name=settings.csrf_header_name)
    if not settings.rate_limit_enabled:
        logger.warning("rate_limiting_disabled")

    @app.middleware("http")
    async def session_middleware(request: Request, call_next):  # type: ignore[override]
        # Load the server-side session by cookie id and keep the cookie in sync afterwards.
        store: SessionStore = request.app.state.session_store
        cookie_id = request.cookies.get(settings.session_cookie_name)
        state = store.get(cookie_id)
        if state is not None:
            store.touch(state)
        request.state.session = state
        response = await call_next(request)
        current = getattr(request.state, "session", None)
        if current is None:
            if cookie_id:
                response.delete_cookie(settings.session_cookie_name, path="/")
        elif current.id != cookie_id:
            # No max_age: the sliding server-side TTL alone decides when a session ends.
            response.set_cookie(
                settings.session_cookie_name,
                current.id,
                path="/",
                httponly=True,
                samesite="lax",
                secure=settings.session_cookie_secure,
            )
        return response

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # Registered last so it wraps everything and answers preflights before sessions load.
    origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
    origin_kwargs: dict[str, Any]
    if origins:
        origin_kwargs = {"allow_origins": origins}
    elif settings.environment == "production":
        logger.warning("cors_allow_list_empty cross_origin_requests=rejected")
        origin_kwargs = {"allow_origins": []}
    else:
        origin_kwargs = {"allow_origin_regex": ".*"}
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["Content-Type", "Authorization", settings.csrf_header_name, "X-Requested-With"],
        expose_headers=[settings.csrf_header_name],
        max_age=86400,
        **origin_kwargs,
    )

    @app.exception_handler(AdmissionRedirect)
    async def _admission_redirect_handler(request: Request, exc: AdmissionRedirect):
        return await admission_redirect_handler(request, exc)

    @app.exception_handler(CouponGenError)
    async def _coupongen_error_handler(request: Request, exc: CouponGenError):
        return await coupongen_error_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(auth_router)
    # Tenant-scoped routes: /t/{tenant_slug}/...
    app.include_router(admin_router)
    app.include_router(store_router)
    app.include_router(pages_router)
    app.include_router(public_router)
    # Unprefixed routes kept for older clients; tenant comes from Referer or session.
    app.include_router(admin_legacy_router)
    app.include_router(store_legacy_router)
    app.include_router(superadmin_router)
    return app


app = create_app()
