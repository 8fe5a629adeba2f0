from __future__ import annotations

from typing import Any

from coupongen.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response("Unauthorized", "AUTH_UNAUTHORIZED", "Authentication required"),
    403: _error_response("Forbidden", "AUTH_FORBIDDEN", "Access denied"),
    500: _error_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}

TENANT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _error_response("Tenant mismatch or missing CSRF token", "TENANT_MISMATCH", "Tenant mismatch"),
    404: _error_response("Unknown tenant", "TENANT_NOT_FOUND", "Tenant not found"),
    503: _error_response("Tenant store unavailable", "SERVICE_UNAVAILABLE", "Service temporarily unavailable"),
}

LEGACY_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _error_response("Tenant could not be resolved", "TENANT_UNRESOLVED", "Tenant could not be resolved"),
}

RATE_LIMITED_RESPONSES: dict[int | str, dict[str, Any]] = {
    429: _error_response("Rate limited", "RATE_LIMITED", "Too many attempts. Try again in 30 minutes."),
}
