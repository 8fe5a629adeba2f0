from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from coupongen.apps.api.response import error_response, is_api_path
from coupongen.core.errors import AdmissionRedirect, CouponGenError, RateLimitedError
from coupongen.persistence.guards import TenantPredicateError
from coupongen.services.audit import record_admission_event
from coupongen.services.telemetry import record_admission_denied


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render_error(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> Response:
    # JSON envelope for /api/ shaped paths, plain text for pages.
    if is_api_path(request.url.path):
        payload = error_response(request=request, code=code, message=message, details=details)
        return JSONResponse(content=payload, status_code=status_code, headers=headers)
    return PlainTextResponse(message, status_code=status_code, headers=headers)


def _request_actor(request: Request):
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return principal
    session = getattr(request.state, "session", None)
    return session.principal if session is not None else None


async def _audit_admission(request: Request, *, event_type: str, outcome: str, error_code: str | None) -> None:
    tenant = getattr(request.state, "tenant", None)
    await record_admission_event(
        request,
        event_type=event_type,
        outcome=outcome,
        principal=_request_actor(request),
        tenant_id=tenant.id if tenant is not None else None,
        tenant_slug=getattr(request.state, "tenant_slug", None),
        error_code=error_code,
    )


async def admission_redirect_handler(request: Request, exc: AdmissionRedirect) -> Response:
    await _audit_admission(request, event_type="admission.redirect", outcome="redirect", error_code=None)
    return RedirectResponse(url=exc.location, status_code=exc.status_code)


async def coupongen_error_handler(request: Request, exc: CouponGenError) -> Response:
    # Every guard failure ends the chain here with its stable code.
    record_admission_denied(exc.code.lower())
    await _audit_admission(request, event_type="admission.rejected", outcome="failure", error_code=exc.code)
    headers: dict[str, str] | None = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_s)}
    return _render_error(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        headers=headers,
    )


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> Response:
    # Missing tenant scope is a client-visible 400, never an unscoped query.
    logger.warning("tenant_predicate_missing path=%s", request.url.path)
    return _render_error(request, status_code=400, code="TENANT_SCOPE_REQUIRED", message=exc.message)


async def http_exception_handler(request: Request, exc: HTTPException) -> Response:
    # Normalize HTTPExceptions into the shared error envelope for API routes.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render_error(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render_error(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    # Surface validation errors with structured details for UI/SDK parsing.
    if not is_api_path(request.url.path):
        return PlainTextResponse("Invalid request", status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _render_error(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
