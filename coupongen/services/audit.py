from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from coupongen.core.config import get_settings
from coupongen.domain.identity import Principal
from coupongen.domain.models import AuditEvent
from coupongen.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "token", "secret", "csrf", "authorization", "cookie"]
_REDACTED_VALUE = "[REDACTED]"
# Failures of an unreachable or hung store, as opposed to programming errors.
_STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def _write_standalone(event: AuditEvent) -> None:
    async with SessionLocal() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError:
            await audit_session.rollback()
            raise


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: int | None,
    tenant_slug: str | None = None,
    actor_id: int | None = None,
    actor_name: str | None = None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking user flows.
    if not get_settings().audit_enabled:
        return
    sanitized_metadata = sanitize_metadata(metadata or {})
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        tenant_slug=tenant_slug,
        actor_id=actor_id,
        actor_name=actor_name,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitized_metadata,
        error_code=error_code,
    )

    if session is None:
        # Bounded so an outage surfaces the original error instead of stalling the response.
        try:
            await asyncio.wait_for(_write_standalone(event), timeout=get_settings().audit_write_timeout_s)
        except _STORE_ERRORS as exc:
            if not best_effort:
                raise
            logger.warning(
                "audit_event_write_failed event_type=%s request_id=%s",
                event_type,
                request_id,
                exc_info=exc,
            )
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            request_id,
            exc_info=exc,
        )


async def record_admission_event(
    request: Request,
    *,
    event_type: str,
    outcome: str,
    principal: Principal | None = None,
    tenant_id: int | None = None,
    tenant_slug: str | None = None,
    error_code: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    # Admission outcomes (rejections and redirects) go to their own audit session.
    context = get_request_context(request)
    await record_event(
        tenant_id=tenant_id,
        tenant_slug=tenant_slug,
        actor_id=principal.id if principal else None,
        actor_name=principal.username if principal else None,
        actor_role=principal.role if principal else None,
        event_type=event_type,
        outcome=outcome,
        request_id=context["request_id"],
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
        metadata={"path": request.url.path, "method": request.method, **(metadata or {})},
        error_code=error_code,
    )
