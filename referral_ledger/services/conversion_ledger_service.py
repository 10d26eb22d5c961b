"""Read-only aggregation over referral conversions."""
import logging
import math
import uuid
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.core.clock import as_utc, end_of, start_of
from referral_ledger.core.enum_utils import get_enum_value
from referral_ledger.core.exceptions import LedgerValidationError, LinkNotFoundError
from referral_ledger.models.referral import ReferralCafe, ReferralConversion, ReferralLink


logger = logging.getLogger(__name__)


RECENT_CONVERSIONS_LIMIT = 10
GRANULARITIES = ("DAY", "WEEK", "MONTH")


def conversion_rate(conversions: int, clicks: int) -> float:
    """Conversions per click as a fraction; 0 when there were no clicks."""
    if clicks <= 0:
        return 0.0
    return conversions / clicks


def normalize_granularity(granularity) -> str:
    value = str(get_enum_value(granularity)).upper()
    if value not in GRANULARITIES:
        raise LedgerValidationError(f"Unsupported granularity: {granularity}", "granularity")
    return value


def bucket_key(moment: datetime, granularity: str) -> str:
    """
    Bucket label for a timestamp.

    DAY   -> 2026-02-14
    WEEK  -> 2026-02-W2   (week of month = ceil(day / 7))
    MONTH -> 2026-02
    """
    moment = as_utc(moment)
    granularity = normalize_granularity(granularity)
    if granularity == "DAY":
        return moment.strftime("%Y-%m-%d")
    if granularity == "WEEK":
        return f"{moment.strftime('%Y-%m')}-W{math.ceil(moment.day / 7)}"
    return moment.strftime("%Y-%m")


class ConversionLedgerService:
    """Link statistics and conversion trends"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_link_ids(
        self,
        link_id: Optional[uuid.UUID] = None,
        cafe_id: Optional[uuid.UUID] = None,
        partner_id: Optional[uuid.UUID] = None,
    ) -> Optional[List[uuid.UUID]]:
        """
        Expand a scope to link ids: a link is itself, a cafe is its links,
        a partner is the links of all of its cafes. None means unscoped.
        """
        if link_id:
            return [link_id]

        if cafe_id:
            result = await self.db.execute(
                select(ReferralLink.id).where(ReferralLink.cafe_id == cafe_id)
            )
            return list(result.scalars().all())

        if partner_id:
            result = await self.db.execute(
                select(ReferralLink.id)
                .join(ReferralCafe, ReferralCafe.id == ReferralLink.cafe_id)
                .where(ReferralCafe.partner_id == partner_id)
            )
            return list(result.scalars().all())

        return None

    async def get_link_stats(self, link_id: uuid.UUID) -> dict:
        link = await self.db.get(ReferralLink, link_id)
        if not link:
            raise LinkNotFoundError(link_id)

        totals = (await self.db.execute(
            select(ReferralConversion.amount, ReferralConversion.commission_amount)
            .where(ReferralConversion.link_id == link_id)
        )).all()

        recent = (await self.db.execute(
            select(ReferralConversion)
            .where(ReferralConversion.link_id == link_id)
            .order_by(ReferralConversion.attributed_at.desc(), ReferralConversion.id)
            .limit(RECENT_CONVERSIONS_LIMIT)
        )).scalars().all()

        conversions = len(totals)
        return {
            "link_id": link.id,
            "short_code": link.short_code,
            "clicks": link.clicks,
            "conversions": conversions,
            "conversion_rate": conversion_rate(conversions, link.clicks),
            "total_revenue": sum((row.amount for row in totals), Decimal("0")),
            "total_commission": sum((row.commission_amount for row in totals), Decimal("0")),
            "recent_conversions": list(recent),
        }

    async def get_conversion_trends(
        self,
        start,
        end,
        granularity: str = "DAY",
        link_id: Optional[uuid.UUID] = None,
        cafe_id: Optional[uuid.UUID] = None,
        partner_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, dict]:
        """
        Conversions, revenue and commission per bucket, in chronological order.
        Only buckets with at least one conversion are present.
        """
        granularity = normalize_granularity(granularity)
        period_start = start_of(start)
        period_end = end_of(end)
        if period_end < period_start:
            raise LedgerValidationError("end must not be before start", "end")

        stmt = (
            select(ReferralConversion)
            .where(
                ReferralConversion.attributed_at >= period_start,
                ReferralConversion.attributed_at <= period_end,
            )
            .order_by(ReferralConversion.attributed_at, ReferralConversion.id)
        )

        link_ids = await self.resolve_link_ids(link_id, cafe_id, partner_id)
        if link_ids is not None:
            if not link_ids:
                return {}
            stmt = stmt.where(ReferralConversion.link_id.in_(link_ids))

        conversions = (await self.db.execute(stmt)).scalars().all()

        buckets: Dict[str, dict] = OrderedDict()
        for conversion in conversions:
            key = bucket_key(conversion.attributed_at, granularity)
            bucket = buckets.setdefault(
                key,
                {"conversions": 0, "revenue": Decimal("0"), "commission": Decimal("0")},
            )
            bucket["conversions"] += 1
            bucket["revenue"] += conversion.amount
            bucket["commission"] += conversion.commission_amount

        return dict(buckets)

