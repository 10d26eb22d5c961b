"""Conversion endpoints: first-touch attribution, fallback lookup, trends."""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from referral_ledger.api.deps import DB, CurrentActor
from referral_ledger.schemas.referral import (
    ConversionCreate,
    ConversionResponse,
    ConversionTrendsResponse,
    FallbackAttributionRequest,
    TrendBucket,
    TrendGranularity,
)
from referral_ledger.services.attribution_service import AttributionService
from referral_ledger.services.conversion_ledger_service import ConversionLedgerService


router = APIRouter()


@router.post("", response_model=ConversionResponse, status_code=status.HTTP_201_CREATED)
async def attribute_conversion(data: ConversionCreate, db: DB, actor: CurrentActor):
    """
    Attribute a subscription to a referral link.

    409 ALREADY_ATTRIBUTED if the user already has a conversion.
    """
    conversion = await AttributionService(db).attribute(
        user_id=data.user_id,
        link_id=data.link_id,
        client=data.client,
        subscription=data.subscription,
        amount=data.amount,
        actor=actor,
    )
    return ConversionResponse.model_validate(conversion)


@router.post("/fallback", response_model=ConversionResponse)
async def find_fallback_attribution(data: FallbackAttributionRequest, db: DB):
    """Most recent conversion from the same hashed IP + user-agent inside the window."""
    conversion = await AttributionService(db).find_fallback_attribution(data.client, data.within_days)
    return ConversionResponse.model_validate(conversion)


@router.get("/trends", response_model=ConversionTrendsResponse)
async def get_conversion_trends(
    db: DB,
    start: date = Query(...),
    end: date = Query(...),
    granularity: TrendGranularity = TrendGranularity.DAY,
    link_id: Optional[UUID] = None,
    cafe_id: Optional[UUID] = None,
    partner_id: Optional[UUID] = None,
):
    """Conversions, revenue and commission per DAY, WEEK (YYYY-MM-Wn) or MONTH bucket."""
    buckets = await ConversionLedgerService(db).get_conversion_trends(
        start,
        end,
        granularity=granularity,
        link_id=link_id,
        cafe_id=cafe_id,
        partner_id=partner_id,
    )
    return ConversionTrendsResponse(
        granularity=granularity,
        buckets={key: TrendBucket(**bucket) for key, bucket in buckets.items()},
    )
