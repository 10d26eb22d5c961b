"""Referral link endpoints: create, list, resolve, click tracking, revoke, stats."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from referral_ledger.api.deps import DB, CurrentActor
from referral_ledger.models.referral import LinkStatus
from referral_ledger.schemas.referral import (
    ClickResult,
    ClientMeta,
    ConversionResponse,
    LinkStatsResponse,
    ReferralLinkCreate,
    ReferralLinkList,
    ReferralLinkResponse,
)
from referral_ledger.services.conversion_ledger_service import ConversionLedgerService
from referral_ledger.services.link_service import LinkService


router = APIRouter()


@router.post("", response_model=ReferralLinkResponse, status_code=status.HTTP_201_CREATED)
async def create_link(data: ReferralLinkCreate, db: DB, actor: CurrentActor):
    """Create a short link for a cafe."""
    link = await LinkService(db).create_link(data, actor)
    return ReferralLinkResponse.model_validate(link)


@router.get("", response_model=ReferralLinkList)
async def list_links(
    db: DB,
    cafe_id: Optional[UUID] = None,
    status: Optional[LinkStatus] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """
    List links. The status filter uses the effective status, so
    status=EXPIRED includes ACTIVE links past their expiry.
    """
    result = await LinkService(db).list_links(cafe_id=cafe_id, status=status, page=page, page_size=page_size)
    return ReferralLinkList(
        items=[ReferralLinkResponse.model_validate(link) for link in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        has_more=result.has_more,
    )


@router.get("/code/{short_code}", response_model=ReferralLinkResponse)
async def resolve_link(short_code: str, db: DB):
    """Resolve a short code. 404 unknown, 410 revoked or expired."""
    link = await LinkService(db).resolve_link(short_code)
    return ReferralLinkResponse.model_validate(link)


@router.post("/code/{short_code}/click", response_model=ClickResult)
async def record_click(short_code: str, client: ClientMeta, db: DB):
    """Count a click; returns the redirect target and hashed client identity."""
    return await LinkService(db).record_click(short_code, client)


@router.get("/{link_id}", response_model=ReferralLinkResponse)
async def get_link(link_id: UUID, db: DB):
    link = await LinkService(db).get_link(link_id)
    return ReferralLinkResponse.model_validate(link)


@router.post("/{link_id}/revoke", response_model=ReferralLinkResponse)
async def revoke_link(link_id: UUID, db: DB, actor: CurrentActor):
    link = await LinkService(db).revoke_link(link_id, actor)
    return ReferralLinkResponse.model_validate(link)


@router.get("/{link_id}/stats", response_model=LinkStatsResponse)
async def get_link_stats(link_id: UUID, db: DB):
    stats = await ConversionLedgerService(db).get_link_stats(link_id)
    stats["recent_conversions"] = [
        ConversionResponse.model_validate(c) for c in stats["recent_conversions"]
    ]
    return LinkStatsResponse(**stats)
