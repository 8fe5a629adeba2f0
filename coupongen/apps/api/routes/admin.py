from __future__ import annotations

from datetime import datetime
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coupongen.apps.api.deps import (
    get_db,
    get_request_tenant,
    require_admin,
    require_csrf,
    require_legacy_tenant_id,
    require_tenant_session,
)
from coupongen.apps.api.openapi import LEGACY_ERROR_RESPONSES, TENANT_ERROR_RESPONSES
from coupongen.domain.identity import Principal, ResolvedTenant
from coupongen.persistence.repos.campaigns import create_campaign, list_campaigns
from coupongen.services.audit import get_request_context, record_event


# Resolver -> consistency guard -> role gate -> forgery token, in declaration order.
router = APIRouter(
    prefix="/t/{tenant_slug}/api/admin",
    tags=["admin"],
    responses=TENANT_ERROR_RESPONSES,
    dependencies=[Depends(require_tenant_session), Depends(require_admin), Depends(require_csrf)],
)
legacy_router = APIRouter(
    prefix="/api/admin",
    tags=["admin", "legacy"],
    responses=LEGACY_ERROR_RESPONSES,
    dependencies=[Depends(require_admin), Depends(require_csrf)],
)


class CampaignCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    discount_type: str = Field(default="percent", pattern="^(percent|fixed)$")
    discount_value: float = Field(default=10, ge=0)


class CampaignResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    campaign_code: str
    name: str
    is_active: bool
    discount_type: str
    discount_value: float
    created_at: datetime | None = None


def _campaign_code() -> str:
    return secrets.token_hex(6).upper()


async def _list(db: AsyncSession, tenant_id: int) -> list[CampaignResponse]:
    campaigns = await list_campaigns(db, tenant_id)
    return [CampaignResponse.model_validate(campaign) for campaign in campaigns]


async def _create(
    request: Request,
    db: AsyncSession,
    tenant_id: int,
    principal: Principal,
    payload: CampaignCreateRequest,
) -> CampaignResponse:
    try:
        campaign = await create_campaign(
            db,
            tenant_id,
            campaign_code=_campaign_code(),
            name=payload.name,
            discount_type=payload.discount_type,
            discount_value=payload.discount_value,
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "CAMPAIGN_CONFLICT", "message": "Campaign could not be created"},
        ) from exc
    await db.refresh(campaign)
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_id=principal.id,
        actor_name=principal.username,
        actor_role=principal.role,
        event_type="campaign.created",
        outcome="success",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"campaign_code": campaign.campaign_code},
        commit=True,
    )
    return CampaignResponse.model_validate(campaign)


@router.get("/campaigns", response_model=list[CampaignResponse])
async def tenant_list_campaigns(
    tenant: ResolvedTenant = Depends(get_request_tenant),
    db: AsyncSession = Depends(get_db),
) -> list[CampaignResponse]:
    return await _list(db, tenant.id)


@router.post("/campaigns", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def tenant_create_campaign(
    request: Request,
    payload: CampaignCreateRequest,
    tenant: ResolvedTenant = Depends(get_request_tenant),
    principal: Principal = Depends(require_tenant_session),
    db: AsyncSession = Depends(get_db),
) -> CampaignResponse:
    return await _create(request, db, tenant.id, principal, payload)


@legacy_router.get("/campaigns", response_model=list[CampaignResponse])
async def legacy_list_campaigns(
    tenant_id: int = Depends(require_legacy_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> list[CampaignResponse]:
    return await _list(db, tenant_id)


@legacy_router.post("/campaigns", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def legacy_create_campaign(
    request: Request,
    payload: CampaignCreateRequest,
    tenant_id: int = Depends(require_legacy_tenant_id),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> CampaignResponse:
    return await _create(request, db, tenant_id, principal, payload)
