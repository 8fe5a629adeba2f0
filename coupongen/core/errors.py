from __future__ import annotations

import math


class CouponGenError(Exception):
    """Base error for CouponGen admission failures."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class UnauthenticatedError(CouponGenError):
    """No principal is attached to the session."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"
    default_message = "Authentication required"


class ForbiddenError(CouponGenError):
    """Principal present but not allowed to perform the request."""

    status_code = 403
    code = "AUTH_FORBIDDEN"
    default_message = "Access denied"


class TenantMismatchError(ForbiddenError):
    """Principal belongs to a different tenant than the resolved one."""

    code = "TENANT_MISMATCH"
    default_message = "Tenant mismatch"


class ForgeryTokenError(ForbiddenError):
    """Missing or invalid anti-forgery token on a protected mutation."""

    code = "CSRF_INVALID"
    default_message = "Invalid or missing CSRF token"


class TenantNotFoundError(CouponGenError):
    """Tenant slug does not exist."""

    status_code = 404
    code = "TENANT_NOT_FOUND"
    default_message = "Tenant not found"


class TenantUnresolvedError(CouponGenError):
    """Tenant identity could not be resolved for a legacy route."""

    status_code = 400
    code = "TENANT_UNRESOLVED"
    default_message = "Tenant could not be resolved"


class TenantStoreUnavailableError(CouponGenError):
    """Tenant store round trip failed; never reported as a missing tenant."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


class RateLimitedError(CouponGenError):
    """Transient rejection with a disclosed retry delay."""

    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many attempts"

    def __init__(self, retry_after_ms: int, message: str | None = None) -> None:
        self.retry_after_ms = max(0, int(retry_after_ms))
        super().__init__(message or f"Too many attempts. Try again in {format_retry_after(self.retry_after_ms)}.")

    @property
    def retry_after_s(self) -> int:
        return max(1, int(math.ceil(self.retry_after_ms / 1000.0)))


class AdmissionRedirect(CouponGenError):
    """Admission outcome that sends the caller elsewhere instead of failing."""

    status_code = 302
    code = "REDIRECT"
    default_message = "Redirect"

    def __init__(self, location: str, *, status_code: int = 302) -> None:
        self.location = location
        self.status_code = status_code
        super().__init__(f"Redirect to {location}")


def format_retry_after(retry_after_ms: int) -> str:
    # Render a coarse human-readable delay; exact counters stay private.
    seconds = max(1, int(math.ceil(retry_after_ms / 1000.0)))
    if seconds < 60:
        return f"{seconds} second" + ("" if seconds == 1 else "s")
    minutes = int(math.ceil(seconds / 60.0))
    if minutes < 60:
        return f"{minutes} minute" + ("" if minutes == 1 else "s")
    hours = int(math.ceil(minutes / 60.0))
    return f"{hours} hour" + ("" if hours == 1 else "s")
