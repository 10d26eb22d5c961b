"""
Adjustment ledger.

Paid payouts are never edited. A correction is a new APPROVED ledger entry
(ADJUSTMENT if positive, CLAWBACK if negative) that references the original;
writing it flips the original PAID → ADJUSTED in the same transaction.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.config import settings
from referral_ledger.core.clock import utcnow
from referral_ledger.core.exceptions import LedgerValidationError, NotFoundError, StateMismatchError
from referral_ledger.models.payout_ledger import LedgerType, PayoutLedgerEntry, PayoutStatus
from referral_ledger.models.referral import ReferralPartner
from referral_ledger.services.audit_service import Actor, AuditService, model_snapshot
from referral_ledger.services.notification_service import NotificationPublisher, publish_payout_status
from referral_ledger.services.payout_state_machine import PayoutStateMachine, validate_transition


logger = logging.getLogger(__name__)


# Originals that were paid at some point, corrected or not
SETTLED_STATUSES = (PayoutStatus.PAID.value, PayoutStatus.ADJUSTED.value)


class AdjustmentService:
    """Service for payout corrections and partner payout history"""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationPublisher] = None):
        self.db = db
        self.notifier = notifier
        self.audit = AuditService(db)
        self.state_machine = PayoutStateMachine(db, notifier)

    async def create_adjustment(
        self,
        original_payout_id: uuid.UUID,
        adjustment_amount: Decimal,
        reason: str,
        approver: str,
        actor: Optional[Actor] = None,
    ) -> PayoutLedgerEntry:
        """
        Append a correction against a PAID payout.

        Raises:
            LedgerValidationError: zero amount or reason shorter than the minimum
            NotFoundError: unknown original
            StateMismatchError: original is not PAID (includes already adjusted)
        """
        actor = actor or Actor(id=approver, email=approver)
        adjustment_amount = Decimal(adjustment_amount)

        if adjustment_amount == 0:
            raise LedgerValidationError("Adjustment amount cannot be zero", "adjustment_amount")
        if len((reason or "").strip()) < settings.ADJUSTMENT_REASON_MIN_LENGTH:
            raise LedgerValidationError(
                f"Adjustment reason must be at least {settings.ADJUSTMENT_REASON_MIN_LENGTH} characters",
                "reason",
            )

        try:
            original = await self.db.get(PayoutLedgerEntry, original_payout_id, populate_existing=True)
            if not original:
                raise NotFoundError("Payout", original_payout_id)
            if original.status != PayoutStatus.PAID.value:
                raise StateMismatchError("Payout", PayoutStatus.PAID.value, original.status, original.id)
            validate_transition(original.status, PayoutStatus.ADJUSTED.value, original.id)

            before = model_snapshot(original)
            flipped = await self.state_machine.compare_and_set(
                original.id,
                PayoutStatus.PAID.value,
                {"status": PayoutStatus.ADJUSTED.value},
            )
            if not flipped:
                await self.db.rollback()
                raise StateMismatchError(
                    "Payout",
                    PayoutStatus.PAID.value,
                    await self.state_machine.current_status(original.id),
                    original.id,
                )

            now = utcnow()
            ledger_type = LedgerType.CLAWBACK if adjustment_amount < 0 else LedgerType.ADJUSTMENT
            adjustment = PayoutLedgerEntry(
                partner_id=original.partner_id,
                period_start=original.period_start,
                period_end=original.period_end,
                status=PayoutStatus.APPROVED.value,
                ledger_type=ledger_type.value,
                snapshot_fingerprint="",
                conversion_ids=[],
                total_conversions=0,
                total_revenue=Decimal("0"),
                total_commission=adjustment_amount,
                approved_by=approver,
                approved_at=now,
                reference_ledger_id=original.id,
                adjustment_reason=reason.strip(),
            )
            self.db.add(adjustment)
            await self.db.flush()

            await self.audit.record(
                "PAYOUT_LEDGER", original.id, "ADJUST", actor,
                before=before,
                after={"status": PayoutStatus.ADJUSTED.value},
                metadata={"adjustment_id": adjustment.id, "amount": adjustment_amount},
            )
            await self.audit.record(
                "PAYOUT_LEDGER", adjustment.id, "CREATE", actor,
                after=model_snapshot(adjustment),
                metadata={"reason": reason.strip(), "reference_ledger_id": original.id},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(adjustment)
        logger.info(
            f"Payout {ledger_type.value.lower()} created: {adjustment.id} "
            f"against {original_payout_id} amount={adjustment_amount}"
        )
        await publish_payout_status(
            self.notifier, original_payout_id, PayoutStatus.ADJUSTED.value,
            {"adjustment_id": str(adjustment.id), "amount": str(adjustment_amount)},
        )
        return adjustment

    async def get_partner_payout_history(self, partner_id: uuid.UUID) -> dict:
        """
        All ledger rows of a partner, split into payouts and corrections.

        total_paid counts PAYOUT rows whose status is PAID. An original that
        has been corrected is ADJUSTED and leaves total_paid; its amount stays
        visible in total_settled. net_paid = total_paid + total_adjustments
        and may be negative.
        """
        partner = await self.db.get(ReferralPartner, partner_id)
        if not partner:
            raise NotFoundError("Partner", partner_id)

        result = await self.db.execute(
            select(PayoutLedgerEntry)
            .where(PayoutLedgerEntry.partner_id == partner_id)
            .order_by(PayoutLedgerEntry.period_start.desc(), PayoutLedgerEntry.created_at.desc())
        )
        entries = list(result.scalars().all())

        payouts = [e for e in entries if e.ledger_type == LedgerType.PAYOUT.value]
        adjustments = [e for e in entries if e.ledger_type != LedgerType.PAYOUT.value]

        total_paid = sum(
            (p.total_commission for p in payouts if p.status == PayoutStatus.PAID.value),
            Decimal("0"),
        )
        total_settled = sum(
            (p.total_commission for p in payouts if p.status in SETTLED_STATUSES),
            Decimal("0"),
        )
        total_adjustments = sum((a.total_commission for a in adjustments), Decimal("0"))

        return {
            "partner_id": partner_id,
            "payouts": payouts,
            "adjustments": adjustments,
            "total_paid": total_paid,
            "total_adjustments": total_adjustments,
            "net_paid": total_paid + total_adjustments,
            "total_settled": total_settled,
        }
