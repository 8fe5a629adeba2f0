from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.apps.api.deps import client_ip, get_db, get_limiter, get_optional_principal, get_request_tenant
from coupongen.apps.api.openapi import RATE_LIMITED_RESPONSES, TENANT_ERROR_RESPONSES
from coupongen.core.config import get_settings
from coupongen.core.errors import AdmissionRedirect
from coupongen.domain.identity import Principal, ResolvedTenant
from coupongen.persistence.repos.campaigns import get_active_campaign_by_code
from coupongen.persistence.repos.coupons import create_coupon
from coupongen.services.rate_limit import AdmissionLimiter
from coupongen.services.tenancy import referer_tenant_slug


logger = logging.getLogger(__name__)

router = APIRouter(tags=["public"], responses={**TENANT_ERROR_RESPONSES, **RATE_LIMITED_RESPONSES})


class SubmissionRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    campaign_code: str = Field(min_length=1, max_length=32)


class SubmissionResponse(BaseModel):
    coupon_code: str
    campaign_code: str
    tenant_slug: str


def _coupon_code() -> str:
    return secrets.token_hex(4).upper()


@router.post("/t/{tenant_slug}/submit", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
async def submit(
    request: Request,
    payload: SubmissionRequest,
    tenant: ResolvedTenant = Depends(get_request_tenant),
    limiter: AdmissionLimiter = Depends(get_limiter),
    db: AsyncSession = Depends(get_db),
) -> SubmissionResponse:
    # Admission is checked and recorded before any further await.
    limiter.admit_submission(ip=client_ip(request), email=payload.email, tenant_id=tenant.id)
    campaign = await get_active_campaign_by_code(db, tenant.id, payload.campaign_code.strip())
    if campaign is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CAMPAIGN_NOT_FOUND", "message": "Campaign not found or inactive"},
        )
    coupon = await create_coupon(
        db,
        tenant.id,
        campaign_id=campaign.id,
        code=_coupon_code(),
        email=payload.email.strip().lower(),
    )
    await db.commit()
    logger.info("coupon_issued tenant=%s campaign=%s", tenant.slug, campaign.campaign_code)
    return SubmissionResponse(coupon_code=coupon.code, campaign_code=campaign.campaign_code, tenant_slug=tenant.slug)


@router.post("/submit", include_in_schema=False)
async def legacy_submit(
    request: Request,
    principal: Principal | None = Depends(get_optional_principal),
) -> None:
    # 307 keeps method and body so the tenant-scoped endpoint applies its own limits.
    slug = (
        referer_tenant_slug(request.headers.get("referer"))
        or (principal.tenant_slug if principal is not None else None)
        or get_settings().default_tenant_slug
    )
    logger.info("legacy_submit_redirect slug=%s", slug)
    raise AdmissionRedirect(f"/t/{slug}/submit", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
