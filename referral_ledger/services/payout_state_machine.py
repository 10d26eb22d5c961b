"""
Payout State Machine

This module is the SINGLE SOURCE OF TRUTH for payout status transitions.
All status changes must go through this module.

    DRAFT → APPROVED → PROCESSING → PAID → ADJUSTED

PAID → ADJUSTED is only taken by the adjustment ledger. Every transition is
a compare-and-set on the expected current status, so two writers racing on
the same payout cannot both win.
"""
import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.config import settings
from referral_ledger.core.clock import utcnow
from referral_ledger.core.exceptions import (
    ApprovalTimeoutError,
    IntegrityViolationError,
    NotFoundError,
    StateMismatchError,
)
from referral_ledger.core.fingerprint import snapshot_fingerprint
from referral_ledger.models.payout_ledger import PayoutLedgerEntry, PayoutStatus
from referral_ledger.services.audit_service import Actor, AuditService, model_snapshot
from referral_ledger.services.notification_service import NotificationPublisher, publish_payout_status
from referral_ledger.services.payout_calculator import PayoutCalculator, build_snapshot


logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
PAYOUT_TRANSITIONS: Dict[str, List[str]] = {
    PayoutStatus.DRAFT.value: [
        PayoutStatus.APPROVED.value,     # Fingerprint verified
    ],
    PayoutStatus.APPROVED.value: [
        PayoutStatus.PROCESSING.value,   # Handed to payment
    ],
    PayoutStatus.PROCESSING.value: [
        PayoutStatus.PAID.value,         # Payment confirmed
    ],
    PayoutStatus.PAID.value: [
        PayoutStatus.ADJUSTED.value,     # Correction appended
    ],
    PayoutStatus.ADJUSTED.value: [],     # Terminal state
}

# Human-readable action names for each transition
TRANSITION_ACTIONS: Dict[tuple, str] = {
    (PayoutStatus.DRAFT.value, PayoutStatus.APPROVED.value): "APPROVE",
    (PayoutStatus.APPROVED.value, PayoutStatus.PROCESSING.value): "MARK_PROCESSING",
    (PayoutStatus.PROCESSING.value, PayoutStatus.PAID.value): "MARK_PAID",
    (PayoutStatus.PAID.value, PayoutStatus.ADJUSTED.value): "ADJUST",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in PAYOUT_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return PAYOUT_TRANSITIONS.get(current_status, [])


def get_required_statuses(new_status: str) -> List[str]:
    """Statuses from which new_status can be reached."""
    return [s for s, targets in PAYOUT_TRANSITIONS.items() if new_status in targets]


def get_transition_action(current_status: str, new_status: str) -> str:
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(current_status: str, new_status: str, payout_id: Any = None) -> None:
    """Raise StateMismatchError unless current_status may move to new_status."""
    if not can_transition(current_status, new_status):
        raise StateMismatchError(
            "Payout",
            get_required_statuses(new_status),
            current_status,
            payout_id,
        )


def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return not PAYOUT_TRANSITIONS.get(status)


def is_serialization_failure(error: DBAPIError) -> bool:
    """PostgreSQL SQLSTATE 40001 (could not serialize access)."""
    return getattr(error.orig, "sqlstate", None) == "40001"


def is_lock_timeout(error: DBAPIError) -> bool:
    return "database is locked" in str(error.orig).lower()


# =============================================================================
# SERVICE
# =============================================================================

class PayoutStateMachine:
    """
    Service for payout approval and payment transitions.

    A failed transition rolls back the session, which expires every instance
    it has loaded. Callers holding ORM objects should keep the ids they need
    and re-read by id afterwards.
    """

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationPublisher] = None):
        self.db = db
        self.notifier = notifier
        self.audit = AuditService(db)
        self.calculator = PayoutCalculator(db)

    async def _get(self, payout_id: uuid.UUID) -> PayoutLedgerEntry:
        result = await self.db.execute(
            select(PayoutLedgerEntry)
            .where(PayoutLedgerEntry.id == payout_id)
            .execution_options(populate_existing=True)
        )
        payout = result.scalar_one_or_none()
        if not payout:
            raise NotFoundError("Payout", payout_id)
        return payout

    async def current_status(self, payout_id: uuid.UUID) -> str:
        result = await self.db.execute(
            select(PayoutLedgerEntry.status).where(PayoutLedgerEntry.id == payout_id)
        )
        return result.scalar_one_or_none() or "MISSING"

    async def compare_and_set(
        self,
        payout_id: uuid.UUID,
        expected_status: str,
        values: Dict[str, Any],
    ) -> bool:
        """UPDATE ... WHERE status = expected. False if someone else moved it first."""
        result = await self.db.execute(
            update(PayoutLedgerEntry)
            .where(
                PayoutLedgerEntry.id == payout_id,
                PayoutLedgerEntry.status == expected_status,
            )
            .values(updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    # ========================================================================
    # Snapshot verification
    # ========================================================================

    async def verify_snapshot(self, payout: PayoutLedgerEntry, provided_fingerprint: str) -> None:
        """
        Check that nothing changed between calculation and approval.

        1. The approver saw the stored fingerprint
        2. The stored ids still hash to the stored fingerprint
        3. The period's live conversion set still hashes to it
        4. The stored totals match the live amounts of the stored ids
        """
        stored = payout.snapshot_fingerprint

        if provided_fingerprint != stored:
            raise IntegrityViolationError(
                "Snapshot fingerprint mismatch. Payout data may have been modified.",
                {"check": "provided", "payout_id": str(payout.id)},
            )

        if snapshot_fingerprint(payout.conversion_ids) != stored:
            raise IntegrityViolationError(
                "Stored conversion ids do not match the snapshot fingerprint.",
                {"check": "stored_ids", "payout_id": str(payout.id)},
            )

        live = build_snapshot(await self.calculator.collect_conversions(
            payout.partner_id, payout.period_start, payout.period_end
        ))
        if live.fingerprint != stored:
            added = sorted(set(live.conversion_ids) - set(payout.conversion_ids))
            removed = sorted(set(payout.conversion_ids) - set(live.conversion_ids))
            raise IntegrityViolationError(
                "Conversions changed since the payout was calculated. Recalculate before approving.",
                {
                    "check": "live_period",
                    "payout_id": str(payout.id),
                    "added": added,
                    "removed": removed,
                },
            )

        stored_rows = await self.calculator.load_conversions(payout.conversion_ids)
        live_commission = sum((c.commission_amount for c in stored_rows), Decimal("0"))
        live_revenue = sum((c.amount for c in stored_rows), Decimal("0"))
        if (
            len(stored_rows) != payout.total_conversions
            or live_commission != payout.total_commission
            or live_revenue != payout.total_revenue
        ):
            raise IntegrityViolationError(
                "Payout totals do not match the snapshotted conversions.",
                {
                    "check": "totals",
                    "payout_id": str(payout.id),
                    "stored_commission": str(payout.total_commission),
                    "live_commission": str(live_commission),
                },
            )

    # ========================================================================
    # Transitions
    # ========================================================================

    async def approve(
        self,
        payout_id: uuid.UUID,
        provided_fingerprint: str,
        approver: str,
        reason: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> PayoutLedgerEntry:
        """
        Approve a DRAFT payout after verifying its snapshot.

        Runs in a SERIALIZABLE transaction bounded by APPROVAL_TIMEOUT_SECONDS.
        Of two concurrent approvals exactly one succeeds; the other raises
        StateMismatchError. Any failure rolls the session back.
        """
        actor = actor or Actor(id=approver, email=approver)

        # Isolation level can only be chosen at the start of a transaction
        if self.db.in_transaction():
            await self.db.commit()

        try:
            payout = await asyncio.wait_for(
                self._approve(payout_id, provided_fingerprint, approver, reason, actor),
                timeout=settings.APPROVAL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            await self.db.rollback()
            logger.error(f"Approval of payout {payout_id} timed out")
            raise ApprovalTimeoutError(
                "Payout approval timed out",
                {"payout_id": str(payout_id), "timeout_seconds": settings.APPROVAL_TIMEOUT_SECONDS},
            )

        logger.info(f"Payout approved: {payout.id} by {approver} commission={payout.total_commission}")
        await publish_payout_status(
            self.notifier, payout.id, payout.status,
            {"approved_by": approver, "fingerprint": payout.snapshot_fingerprint},
        )
        return payout

    async def _approve(
        self,
        payout_id: uuid.UUID,
        provided_fingerprint: str,
        approver: str,
        reason: Optional[str],
        actor: Actor,
    ) -> PayoutLedgerEntry:
        await self.db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

        try:
            payout = await self._get(payout_id)
            validate_transition(payout.status, PayoutStatus.APPROVED.value, payout_id)

            try:
                await self.verify_snapshot(payout, provided_fingerprint)
            except IntegrityViolationError as e:
                logger.warning(
                    f"SECURITY: payout {payout_id} integrity violation on approval "
                    f"by {approver}: {e.message} {e.details}"
                )
                raise

            before = model_snapshot(payout)
            approved = await self.compare_and_set(
                payout_id,
                PayoutStatus.DRAFT.value,
                {
                    "status": PayoutStatus.APPROVED.value,
                    "approved_by": approver,
                    "approved_at": utcnow(),
                },
            )
            if not approved:
                await self.db.rollback()
                raise StateMismatchError(
                    "Payout", PayoutStatus.DRAFT.value, await self.current_status(payout_id), payout_id
                )

            payout = await self._get(payout_id)
            await self.audit.record(
                "PAYOUT_LEDGER", payout_id, "APPROVE", actor,
                before=before,
                after=model_snapshot(payout),
                metadata={"reason": reason, "fingerprint": payout.snapshot_fingerprint},
            )
            await self.db.commit()
        except DBAPIError as e:
            await self.db.rollback()
            if is_serialization_failure(e):
                logger.warning(f"Serialization failure approving payout {payout_id}")
                raise StateMismatchError(
                    "Payout", PayoutStatus.DRAFT.value, await self.current_status(payout_id), payout_id
                )
            if is_lock_timeout(e):
                raise ApprovalTimeoutError(
                    "Payout is locked by another approval",
                    {"payout_id": str(payout_id)},
                )
            raise
        except Exception:
            await self.db.rollback()
            raise

        return payout

    async def _transition(
        self,
        payout_id: uuid.UUID,
        new_status: str,
        values: Dict[str, Any],
        actor: Actor,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PayoutLedgerEntry:
        """Compare-and-set to new_status with audit. Rolls back on any failure."""
        try:
            payout = await self._get(payout_id)
            current = payout.status
            validate_transition(current, new_status, payout_id)

            before = model_snapshot(payout)
            if not await self.compare_and_set(payout_id, current, {"status": new_status, **values}):
                await self.db.rollback()
                raise StateMismatchError(
                    "Payout", current, await self.current_status(payout_id), payout_id
                )

            payout = await self._get(payout_id)
            await self.audit.record(
                "PAYOUT_LEDGER", payout_id, get_transition_action(current, new_status), actor,
                before=before,
                after=model_snapshot(payout),
                metadata=metadata,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await publish_payout_status(self.notifier, payout.id, payout.status, metadata)
        return payout

    async def mark_processing(self, payout_id: uuid.UUID, actor: Actor) -> PayoutLedgerEntry:
        """APPROVED → PROCESSING."""
        payout = await self._transition(payout_id, PayoutStatus.PROCESSING.value, {}, actor)
        logger.info(f"Payout processing: {payout.id}")
        return payout

    async def mark_paid(
        self,
        payout_id: uuid.UUID,
        payment_method: str,
        payment_reference: str,
        actor: Actor,
    ) -> PayoutLedgerEntry:
        """PROCESSING → PAID, recording how and when it was paid."""
        payout = await self._transition(
            payout_id,
            PayoutStatus.PAID.value,
            {
                "payment_method": payment_method,
                "payment_reference": payment_reference,
                "paid_at": utcnow(),
            },
            actor,
            metadata={"payment_method": payment_method, "payment_reference": payment_reference},
        )
        logger.info(f"Payout paid: {payout.id} via {payment_method} ref={payment_reference}")
        return payout
