"""
Payout calculation.

Folds a partner's conversions for a period into a DRAFT ledger entry and
fingerprints the exact set of conversions it was built from:

    snapshot_fingerprint = sha256(",".join(sorted(conversion_ids)))

Re-running a calculation for the same period refreshes the DRAFT in place;
once a payout has left DRAFT it is never recalculated.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.core.clock import end_of, start_of, utcnow
from referral_ledger.core.exceptions import DuplicatePayoutError, LedgerValidationError, NotFoundError
from referral_ledger.core.fingerprint import canonical_ids, snapshot_fingerprint
from referral_ledger.models.payout_ledger import LedgerType, PayoutLedgerEntry, PayoutStatus
from referral_ledger.models.referral import ReferralConversion, ReferralPartner
from referral_ledger.services.audit_service import Actor, AuditService, model_snapshot
from referral_ledger.services.conversion_ledger_service import ConversionLedgerService


logger = logging.getLogger(__name__)


class CalculationOutcome(str, Enum):
    CREATED = "CREATED"
    RECALCULATED = "RECALCULATED"
    UNCHANGED = "UNCHANGED"  # payout already past DRAFT


@dataclass
class PayoutSnapshot:
    conversion_ids: List[str] = field(default_factory=list)
    fingerprint: str = ""
    total_conversions: int = 0
    total_revenue: Decimal = Decimal("0")
    total_commission: Decimal = Decimal("0")


@dataclass
class PayoutCalculation:
    payout: PayoutLedgerEntry
    conversions: List[ReferralConversion]
    outcome: CalculationOutcome


def build_snapshot(conversions: List[ReferralConversion]) -> PayoutSnapshot:
    ids = [c.id for c in conversions]
    return PayoutSnapshot(
        conversion_ids=canonical_ids(ids),
        fingerprint=snapshot_fingerprint(ids),
        total_conversions=len(conversions),
        total_revenue=sum((c.amount for c in conversions), Decimal("0")),
        total_commission=sum((c.commission_amount for c in conversions), Decimal("0")),
    )


def normalize_period(period_start, period_end):
    """Widen dates to whole UTC days and require end after start."""
    start = start_of(period_start)
    end = end_of(period_end)
    if end <= start:
        raise LedgerValidationError("Period end must be after period start", "period_end")
    return start, end


class PayoutCalculator:
    """Service for payout calculation"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.ledger = ConversionLedgerService(db)

    async def collect_conversions(
        self,
        partner_id: uuid.UUID,
        period_start: datetime,
        period_end: datetime,
    ) -> List[ReferralConversion]:
        """Conversions of every link of every cafe of the partner in [start, end]."""
        link_ids = await self.ledger.resolve_link_ids(partner_id=partner_id)
        if not link_ids:
            return []

        result = await self.db.execute(
            select(ReferralConversion)
            .where(
                ReferralConversion.link_id.in_(link_ids),
                ReferralConversion.attributed_at >= period_start,
                ReferralConversion.attributed_at <= period_end,
            )
            .order_by(ReferralConversion.attributed_at, ReferralConversion.id)
        )
        return list(result.scalars().all())

    async def get_period_payout(
        self,
        partner_id: uuid.UUID,
        period_start: datetime,
        period_end: datetime,
    ):
        result = await self.db.execute(
            select(PayoutLedgerEntry)
            .where(
                PayoutLedgerEntry.partner_id == partner_id,
                PayoutLedgerEntry.period_start == period_start,
                PayoutLedgerEntry.period_end == period_end,
                PayoutLedgerEntry.ledger_type == LedgerType.PAYOUT.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def calculate(
        self,
        partner_id: uuid.UUID,
        period_start,
        period_end,
        actor: Actor,
    ) -> PayoutCalculation:
        """
        Calculate (or recalculate) the DRAFT payout for a partner and period.

        Flow:
        1. Existing non-DRAFT payout -> UNCHANGED, returned as is
        2. Gather the period's conversions across all of the partner's cafes
        3. Totals + fingerprint
        4. Refresh the existing DRAFT (compare-and-set) or insert a new one
        """
        period_start, period_end = normalize_period(period_start, period_end)

        partner = await self.db.get(ReferralPartner, partner_id)
        if not partner:
            raise NotFoundError("Partner", partner_id)

        existing = await self.get_period_payout(partner_id, period_start, period_end)
        if existing and existing.status != PayoutStatus.DRAFT.value:
            logger.info(
                f"Payout {existing.id} for partner {partner_id} is {existing.status}; "
                f"not recalculated"
            )
            return PayoutCalculation(
                payout=existing,
                conversions=await self.load_conversions(existing.conversion_ids),
                outcome=CalculationOutcome.UNCHANGED,
            )

        conversions = await self.collect_conversions(partner_id, period_start, period_end)
        snapshot = build_snapshot(conversions)

        if existing:
            payout, outcome = await self._recalculate(existing, snapshot, actor)
        else:
            payout, outcome = await self._create(partner_id, period_start, period_end, snapshot, actor)

        if outcome == CalculationOutcome.UNCHANGED:
            conversions = await self.load_conversions(payout.conversion_ids)

        logger.info(
            f"Payout {outcome.value.lower()}: {payout.id} partner={partner_id} "
            f"conversions={payout.total_conversions} commission={payout.total_commission}"
        )
        return PayoutCalculation(payout=payout, conversions=conversions, outcome=outcome)

    async def _create(self, partner_id, period_start, period_end, snapshot: PayoutSnapshot, actor: Actor):
        payout = PayoutLedgerEntry(
            partner_id=partner_id,
            period_start=period_start,
            period_end=period_end,
            status=PayoutStatus.DRAFT.value,
            ledger_type=LedgerType.PAYOUT.value,
            snapshot_fingerprint=snapshot.fingerprint,
            conversion_ids=snapshot.conversion_ids,
            total_conversions=snapshot.total_conversions,
            total_revenue=snapshot.total_revenue,
            total_commission=snapshot.total_commission,
        )
        self.db.add(payout)

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicatePayoutError(
                "A payout for this partner and period already exists",
                {
                    "partner_id": str(partner_id),
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )

        try:
            await self.audit.record(
                "PAYOUT_LEDGER", payout.id, "CALCULATE", actor,
                after=model_snapshot(payout),
                metadata={"fingerprint": snapshot.fingerprint},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(payout)
        return payout, CalculationOutcome.CREATED

    async def _recalculate(self, existing: PayoutLedgerEntry, snapshot: PayoutSnapshot, actor: Actor):
        before = model_snapshot(existing)

        try:
            result = await self.db.execute(
                update(PayoutLedgerEntry)
                .where(
                    PayoutLedgerEntry.id == existing.id,
                    PayoutLedgerEntry.status == PayoutStatus.DRAFT.value,
                )
                .values(
                    snapshot_fingerprint=snapshot.fingerprint,
                    conversion_ids=snapshot.conversion_ids,
                    total_conversions=snapshot.total_conversions,
                    total_revenue=snapshot.total_revenue,
                    total_commission=snapshot.total_commission,
                    updated_at=utcnow(),
                )
            )

            if result.rowcount == 0:
                # Approved between our read and our write
                await self.db.rollback()
                payout = await self.get_period_payout(
                    existing.partner_id, existing.period_start, existing.period_end
                )
                return payout, CalculationOutcome.UNCHANGED

            payout = await self.get_period_payout(
                existing.partner_id, existing.period_start, existing.period_end
            )
            await self.audit.record(
                "PAYOUT_LEDGER", payout.id, "RECALCULATE", actor,
                before=before,
                after=model_snapshot(payout),
                metadata={
                    "previous_fingerprint": before["snapshot_fingerprint"],
                    "fingerprint": snapshot.fingerprint,
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return payout, CalculationOutcome.RECALCULATED

    async def load_conversions(self, conversion_ids: List[str]) -> List[ReferralConversion]:
        if not conversion_ids:
            return []
        result = await self.db.execute(
            select(ReferralConversion)
            .where(ReferralConversion.id.in_([uuid.UUID(i) for i in conversion_ids]))
            .order_by(ReferralConversion.attributed_at, ReferralConversion.id)
        )
        return list(result.scalars().all())
