"""
Payout ledger endpoints.

DRAFT → APPROVED → PROCESSING → PAID, plus adjustments/clawbacks against
PAID payouts. Approval requires the snapshot fingerprint returned by
/payouts/calculate.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from referral_ledger.api.deps import DB, CurrentActor, Notifier
from referral_ledger.models.payout_ledger import LedgerType, PayoutStatus
from referral_ledger.schemas.payout import (
    PayoutAdjustmentCreate,
    PayoutApproveRequest,
    PayoutCalculateRequest,
    PayoutCalculationResponse,
    PayoutIntegrityResponse,
    PayoutList,
    PayoutPaidRequest,
    PayoutResponse,
    PayoutSnapshotResponse,
)
from referral_ledger.schemas.referral import ConversionResponse
from referral_ledger.services.adjustment_service import AdjustmentService
from referral_ledger.services.payout_calculator import PayoutCalculator
from referral_ledger.services.payout_query_service import PayoutQueryService
from referral_ledger.services.payout_state_machine import PayoutStateMachine


router = APIRouter()


@router.post("/calculate", response_model=PayoutCalculationResponse)
async def calculate_payout(data: PayoutCalculateRequest, db: DB, actor: CurrentActor):
    """
    Calculate the DRAFT payout for a partner and period.

    outcome: CREATED, RECALCULATED (existing DRAFT refreshed) or UNCHANGED
    (payout already approved or later).
    """
    result = await PayoutCalculator(db).calculate(
        data.partner_id, data.period_start, data.period_end, actor
    )
    return PayoutCalculationResponse(
        outcome=result.outcome.value,
        payout=PayoutResponse.model_validate(result.payout),
        conversions=[ConversionResponse.model_validate(c) for c in result.conversions],
    )


@router.get("", response_model=PayoutList)
async def list_payouts(
    db: DB,
    partner_id: Optional[UUID] = None,
    status: Optional[PayoutStatus] = None,
    ledger_type: Optional[LedgerType] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    result = await PayoutQueryService(db).list_payouts(
        partner_id=partner_id,
        status=status,
        ledger_type=ledger_type,
        page=page,
        page_size=page_size,
    )
    return PayoutList(
        items=[PayoutResponse.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        has_more=result.has_more,
    )


@router.get("/{payout_id}", response_model=PayoutResponse)
async def get_payout(payout_id: UUID, db: DB):
    payout = await PayoutQueryService(db).get_payout(payout_id)
    return PayoutResponse.model_validate(payout)


@router.get("/{payout_id}/snapshot", response_model=PayoutSnapshotResponse)
async def get_payout_snapshot(payout_id: UUID, db: DB):
    snapshot = await PayoutQueryService(db).get_payout_snapshot(payout_id)
    return PayoutSnapshotResponse(
        payout=PayoutResponse.model_validate(snapshot["payout"]),
        conversions=[ConversionResponse.model_validate(c) for c in snapshot["conversions"]],
        is_valid=snapshot["is_valid"],
    )


@router.get("/{payout_id}/verify", response_model=PayoutIntegrityResponse)
async def verify_payout(payout_id: UUID, db: DB):
    is_valid = await PayoutQueryService(db).verify_snapshot_integrity(payout_id)
    return PayoutIntegrityResponse(payout_id=payout_id, is_valid=is_valid)


@router.post("/{payout_id}/approve", response_model=PayoutResponse)
async def approve_payout(
    payout_id: UUID,
    data: PayoutApproveRequest,
    db: DB,
    actor: CurrentActor,
    notifier: Notifier,
):
    """
    Approve a DRAFT payout.

    422 INTEGRITY_VIOLATION if conversions changed since calculation,
    409 STATE_MISMATCH if it is no longer DRAFT.
    """
    payout = await PayoutStateMachine(db, notifier).approve(
        payout_id,
        data.snapshot_fingerprint,
        str(data.approved_by),
        reason=data.reason,
        actor=actor,
    )
    return PayoutResponse.model_validate(payout)


@router.post("/{payout_id}/processing", response_model=PayoutResponse)
async def mark_payout_processing(payout_id: UUID, db: DB, actor: CurrentActor, notifier: Notifier):
    payout = await PayoutStateMachine(db, notifier).mark_processing(payout_id, actor)
    return PayoutResponse.model_validate(payout)


@router.post("/{payout_id}/paid", response_model=PayoutResponse)
async def mark_payout_paid(
    payout_id: UUID,
    data: PayoutPaidRequest,
    db: DB,
    actor: CurrentActor,
    notifier: Notifier,
):
    payout = await PayoutStateMachine(db, notifier).mark_paid(
        payout_id, data.payment_method, data.payment_reference, actor
    )
    return PayoutResponse.model_validate(payout)


@router.post(
    "/{payout_id}/adjustments",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payout_adjustment(
    payout_id: UUID,
    data: PayoutAdjustmentCreate,
    db: DB,
    actor: CurrentActor,
    notifier: Notifier,
):
    """Append an ADJUSTMENT (positive) or CLAWBACK (negative) to a PAID payout."""
    adjustment = await AdjustmentService(db, notifier).create_adjustment(
        payout_id,
        data.adjustment_amount,
        data.reason,
        str(data.approved_by),
        actor=actor,
    )
    return PayoutResponse.model_validate(adjustment)
