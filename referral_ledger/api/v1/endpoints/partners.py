"""
Referral Partner API Endpoints

- Partner registration & profile management
- Cafe management (commission rates)
- Partner statistics and payout history
- Partner API keys (issue, list, revoke, verify)
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from referral_ledger.api.deps import DB, CurrentActor
from referral_ledger.models.referral import CafeStatus, PartnerStatus
from referral_ledger.schemas.payout import PartnerPayoutHistoryResponse, PayoutResponse
from referral_ledger.schemas.referral import (
    ApiKeyVerification,
    ApiKeyVerifyRequest,
    PartnerApiKeyCreate,
    PartnerApiKeyIssued,
    PartnerApiKeyResponse,
    PartnerStatsResponse,
    ReferralCafeCreate,
    ReferralCafeList,
    ReferralCafeResponse,
    ReferralCafeUpdate,
    ReferralPartnerCreate,
    ReferralPartnerList,
    ReferralPartnerResponse,
    ReferralPartnerUpdate,
)
from referral_ledger.services.adjustment_service import AdjustmentService
from referral_ledger.services.partner_service import PartnerService


router = APIRouter()


# ============================================================================
# Partners
# ============================================================================

@router.post("/partners", response_model=ReferralPartnerResponse, status_code=status.HTTP_201_CREATED)
async def create_partner(data: ReferralPartnerCreate, db: DB, actor: CurrentActor):
    """Register a partner organization."""
    partner = await PartnerService(db).create_partner(data, actor)
    return ReferralPartnerResponse.model_validate(partner)


@router.get("/partners", response_model=ReferralPartnerList)
async def list_partners(
    db: DB,
    status: Optional[PartnerStatus] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    result = await PartnerService(db).list_partners(status=status, page=page, page_size=page_size)
    return ReferralPartnerList(
        items=[ReferralPartnerResponse.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        has_more=result.has_more,
    )


@router.get("/partners/{partner_id}", response_model=ReferralPartnerResponse)
async def get_partner(partner_id: UUID, db: DB):
    partner = await PartnerService(db).get_partner(partner_id)
    return ReferralPartnerResponse.model_validate(partner)


@router.patch("/partners/{partner_id}", response_model=ReferralPartnerResponse)
async def update_partner(partner_id: UUID, data: ReferralPartnerUpdate, db: DB, actor: CurrentActor):
    partner = await PartnerService(db).update_partner(partner_id, data, actor)
    return ReferralPartnerResponse.model_validate(partner)


@router.get("/partners/{partner_id}/stats", response_model=PartnerStatsResponse)
async def get_partner_stats(partner_id: UUID, db: DB):
    """Active cafes, active links, conversions and total commission."""
    return PartnerStatsResponse(**await PartnerService(db).get_partner_stats(partner_id))


@router.get("/partners/{partner_id}/payout-history", response_model=PartnerPayoutHistoryResponse)
async def get_partner_payout_history(partner_id: UUID, db: DB):
    """Payouts vs corrections, with net paid."""
    history = await AdjustmentService(db).get_partner_payout_history(partner_id)
    return PartnerPayoutHistoryResponse(
        partner_id=history["partner_id"],
        payouts=[PayoutResponse.model_validate(p) for p in history["payouts"]],
        adjustments=[PayoutResponse.model_validate(a) for a in history["adjustments"]],
        total_paid=history["total_paid"],
        total_adjustments=history["total_adjustments"],
        net_paid=history["net_paid"],
        total_settled=history["total_settled"],
    )


# ============================================================================
# Cafes
# ============================================================================

@router.get("/partners/{partner_id}/cafes", response_model=ReferralCafeList)
async def list_cafes(
    partner_id: UUID,
    db: DB,
    status: Optional[CafeStatus] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    result = await PartnerService(db).list_cafes(partner_id, status=status, page=page, page_size=page_size)
    return ReferralCafeList(
        items=[ReferralCafeResponse.model_validate(c) for c in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        has_more=result.has_more,
    )


@router.post("/cafes", response_model=ReferralCafeResponse, status_code=status.HTTP_201_CREATED)
async def create_cafe(data: ReferralCafeCreate, db: DB, actor: CurrentActor):
    cafe = await PartnerService(db).create_cafe(data, actor)
    return ReferralCafeResponse.model_validate(cafe)


@router.get("/cafes/{cafe_id}", response_model=ReferralCafeResponse)
async def get_cafe(cafe_id: UUID, db: DB):
    cafe = await PartnerService(db).get_cafe(cafe_id)
    return ReferralCafeResponse.model_validate(cafe)


@router.patch("/cafes/{cafe_id}", response_model=ReferralCafeResponse)
async def update_cafe(cafe_id: UUID, data: ReferralCafeUpdate, db: DB, actor: CurrentActor):
    """Update name, status or commission rate. Existing conversions keep their rate."""
    cafe = await PartnerService(db).update_cafe(cafe_id, data, actor)
    return ReferralCafeResponse.model_validate(cafe)


# ============================================================================
# API Keys
# ============================================================================

@router.post(
    "/partners/{partner_id}/api-keys",
    response_model=PartnerApiKeyIssued,
    status_code=status.HTTP_201_CREATED,
)
async def generate_api_key(partner_id: UUID, data: PartnerApiKeyCreate, db: DB, actor: CurrentActor):
    """Issue an API key. The raw key is only returned by this call."""
    api_key, raw_key = await PartnerService(db).generate_api_key(partner_id, data, actor)
    return PartnerApiKeyIssued(api_key=raw_key, key=PartnerApiKeyResponse.model_validate(api_key))


@router.get("/partners/{partner_id}/api-keys", response_model=List[PartnerApiKeyResponse])
async def list_api_keys(partner_id: UUID, db: DB):
    keys = await PartnerService(db).list_api_keys(partner_id)
    return [PartnerApiKeyResponse.model_validate(k) for k in keys]


@router.post("/api-keys/verify", response_model=ApiKeyVerification)
async def verify_api_key(data: ApiKeyVerifyRequest, db: DB):
    return ApiKeyVerification(**await PartnerService(db).verify_api_key(data.api_key))


@router.post("/api-keys/{key_id}/revoke", response_model=PartnerApiKeyResponse)
async def revoke_api_key(key_id: UUID, db: DB, actor: CurrentActor):
    api_key = await PartnerService(db).revoke_api_key(key_id, actor)
    return PartnerApiKeyResponse.model_validate(api_key)
