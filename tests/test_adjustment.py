import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from referral_ledger.core.exceptions import LedgerValidationError, NotFoundError, StateMismatchError
from referral_ledger.models.audit_log import AuditLog
from referral_ledger.services.adjustment_service import AdjustmentService
from referral_ledger.services.payout_calculator import PayoutCalculator
from referral_ledger.services.payout_state_machine import PayoutStateMachine

APPROVER = "finance@qetta.com"
REASON = "Refunded subscription for user feb-2"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
async def paid_payout(db_session, referral_setup, add_conversion, actor):
    """February payout (100 + 200 at 5% = 15) taken all the way to PAID."""
    partner, cafe, link = referral_setup
    await add_conversion(link, cafe, "feb-1", "100.00", attributed_at=utc(2026, 2, 2))
    await add_conversion(link, cafe, "feb-2", "200.00", attributed_at=utc(2026, 2, 14))

    payout = (await PayoutCalculator(db_session).calculate(
        partner.id, date(2026, 2, 1), date(2026, 2, 28), actor
    )).payout
    machine = PayoutStateMachine(db_session)
    await machine.approve(payout.id, payout.snapshot_fingerprint, APPROVER)
    await machine.mark_processing(payout.id, actor)
    return await machine.mark_paid(payout.id, "BANK_TRANSFER", "TX-0301", actor)


async def test_clawback_against_paid_payout(db_session, paid_payout, actor):
    service = AdjustmentService(db_session)
    clawback = await service.create_adjustment(
        paid_payout.id, Decimal("-10.00"), REASON, APPROVER, actor=actor
    )

    assert clawback.ledger_type == "CLAWBACK"
    assert clawback.status == "APPROVED"
    assert clawback.total_commission == Decimal("-10")
    assert clawback.reference_ledger_id == paid_payout.id
    assert clawback.partner_id == paid_payout.partner_id
    assert clawback.snapshot_fingerprint == ""
    assert clawback.conversion_ids == []
    assert clawback.approved_by == APPROVER
    assert clawback.adjustment_reason == REASON

    await db_session.refresh(paid_payout)
    assert paid_payout.status == "ADJUSTED"
    # The original keeps its snapshot and amounts
    assert paid_payout.total_commission == Decimal("15")
    assert paid_payout.total_conversions == 2


async def test_positive_adjustment(db_session, paid_payout):
    adjustment = await AdjustmentService(db_session).create_adjustment(
        paid_payout.id, Decimal("2.50"), "Missed conversion from a late webhook", APPROVER
    )
    assert adjustment.ledger_type == "ADJUSTMENT"
    assert adjustment.total_commission == Decimal("2.5")


async def test_adjustment_is_audited_on_both_rows(db_session, paid_payout):
    adjustment = await AdjustmentService(db_session).create_adjustment(
        paid_payout.id, Decimal("-5.00"), REASON, APPROVER
    )

    entries = (await db_session.execute(
        select(AuditLog).where(AuditLog.action.in_(["ADJUST", "CREATE"]), AuditLog.entity_type == "PAYOUT_LEDGER")
    )).scalars().all()
    by_entity = {e.entity_id: e for e in entries}

    assert by_entity[str(paid_payout.id)].action == "ADJUST"
    assert by_entity[str(paid_payout.id)].after_state == {"status": "ADJUSTED"}
    assert by_entity[str(adjustment.id)].action == "CREATE"
    assert by_entity[str(adjustment.id)].metadata_["reason"] == REASON


async def test_net_paid_carries_sign(db_session, paid_payout, referral_setup):
    partner, _, _ = referral_setup
    service = AdjustmentService(db_session)
    await service.create_adjustment(paid_payout.id, Decimal("-20.00"), REASON, APPROVER)

    history = await service.get_partner_payout_history(partner.id)

    assert [p.id for p in history["payouts"]] == [paid_payout.id]
    assert len(history["adjustments"]) == 1
    assert history["total_paid"] == Decimal("0")
    assert history["total_adjustments"] == Decimal("-20")
    assert history["net_paid"] == Decimal("-20")
    assert history["total_settled"] == Decimal("15")


async def test_unpaid_payouts_do_not_count(db_session, referral_setup, actor):
    partner, _, _ = referral_setup
    await PayoutCalculator(db_session).calculate(partner.id, date(2026, 1, 1), date(2026, 1, 31), actor)

    history = await AdjustmentService(db_session).get_partner_payout_history(partner.id)
    assert len(history["payouts"]) == 1
    assert history["total_paid"] == Decimal("0")
    assert history["net_paid"] == Decimal("0")
    assert history["total_settled"] == Decimal("0")


async def test_adjustments_do_not_stack(db_session, paid_payout):
    service = AdjustmentService(db_session)
    await service.create_adjustment(paid_payout.id, Decimal("-1.00"), REASON, APPROVER)

    with pytest.raises(StateMismatchError) as exc_info:
        await service.create_adjustment(paid_payout.id, Decimal("-1.00"), REASON, APPROVER)
    assert exc_info.value.actual == "ADJUSTED"


async def test_requires_paid_original(db_session, referral_setup, actor):
    partner, _, _ = referral_setup
    draft = (await PayoutCalculator(db_session).calculate(
        partner.id, date(2026, 2, 1), date(2026, 2, 28), actor
    )).payout

    with pytest.raises(StateMismatchError) as exc_info:
        await AdjustmentService(db_session).create_adjustment(draft.id, Decimal("5.00"), REASON, APPROVER)
    assert exc_info.value.details["required_status"] == "PAID"


@pytest.mark.parametrize(
    "amount, reason",
    [
        (Decimal("0"), REASON),
        (Decimal("-5.00"), "too short"),
        (Decimal("-5.00"), "          "),
    ],
)
async def test_rejects_invalid_input(db_session, paid_payout, amount, reason):
    with pytest.raises(LedgerValidationError):
        await AdjustmentService(db_session).create_adjustment(paid_payout.id, amount, reason, APPROVER)

    await db_session.refresh(paid_payout)
    assert paid_payout.status == "PAID"


async def test_unknown_original(db_session):
    with pytest.raises(NotFoundError):
        await AdjustmentService(db_session).create_adjustment(uuid.uuid4(), Decimal("5.00"), REASON, APPROVER)


async def test_history_unknown_partner(db_session):
    with pytest.raises(NotFoundError):
        await AdjustmentService(db_session).get_partner_payout_history(uuid.uuid4())
