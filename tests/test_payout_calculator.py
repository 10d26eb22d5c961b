import hashlib
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from referral_ledger.core.exceptions import LedgerValidationError, NotFoundError
from referral_ledger.models.audit_log import AuditLog
from referral_ledger.models.payout_ledger import PayoutLedgerEntry
from referral_ledger.services.payout_calculator import (
    CalculationOutcome,
    PayoutCalculator,
    build_snapshot,
    normalize_period,
)
from referral_ledger.services.payout_state_machine import PayoutStateMachine


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
async def february(referral_setup, add_conversion):
    """Three conversions (100, 200, 150) at 5% inside Feb 2026, one outside."""
    partner, cafe, link = referral_setup
    conversions = [
        await add_conversion(link, cafe, "feb-1", "100.00", attributed_at=utc(2026, 2, 2, 9)),
        await add_conversion(link, cafe, "feb-2", "200.00", attributed_at=utc(2026, 2, 14, 12)),
        await add_conversion(link, cafe, "feb-3", "150.00", attributed_at=utc(2026, 2, 27, 18)),
    ]
    await add_conversion(link, cafe, "mar-1", "999.00", attributed_at=utc(2026, 3, 1, 0, 0, 1))
    return partner, cafe, link, conversions


def test_normalize_period_widens_dates():
    start, end = normalize_period(date(2026, 2, 1), date(2026, 2, 28))
    assert start == utc(2026, 2, 1)
    assert end == utc(2026, 2, 28, 23, 59, 59, 999999)


def test_normalize_period_rejects_inverted_range():
    with pytest.raises(LedgerValidationError):
        normalize_period(date(2026, 2, 28), date(2026, 2, 1))


def test_build_snapshot_empty():
    snapshot = build_snapshot([])
    assert snapshot.total_conversions == 0
    assert snapshot.total_commission == Decimal("0")
    assert snapshot.fingerprint == hashlib.sha256(b"").hexdigest()


async def test_february_example(db_session, february, actor):
    partner, _, _, conversions = february

    result = await PayoutCalculator(db_session).calculate(
        partner.id, date(2026, 2, 1), date(2026, 2, 28), actor
    )
    payout = result.payout

    expected_ids = sorted(str(c.id) for c in conversions)
    assert result.outcome == CalculationOutcome.CREATED
    assert payout.status == "DRAFT"
    assert payout.ledger_type == "PAYOUT"
    assert payout.total_conversions == 3
    assert payout.total_revenue == Decimal("450")
    assert payout.total_commission == Decimal("22.5")
    assert payout.conversion_ids == expected_ids
    assert payout.snapshot_fingerprint == hashlib.sha256(",".join(expected_ids).encode()).hexdigest()
    assert {c.id for c in result.conversions} == {c.id for c in conversions}


async def test_calculate_is_idempotent(db_session, february, actor):
    partner, _, _, _ = february
    calculator = PayoutCalculator(db_session)

    first = await calculator.calculate(partner.id, date(2026, 2, 1), date(2026, 2, 28), actor)
    second = await calculator.calculate(partner.id, date(2026, 2, 1), date(2026, 2, 28), actor)

    assert second.outcome == CalculationOutcome.RECALCULATED
    assert second.payout.id == first.payout.id
    assert second.payout.snapshot_fingerprint == first.payout.snapshot_fingerprint

    rows = (await db_session.execute(
        select(PayoutLedgerEntry).where(PayoutLedgerEntry.partner_id == partner.id)
    )).scalars().all()
    assert len(rows) == 1


async def test_recalculate_picks_up_late_conversion(db_session, february, add_conversion, actor):
    partner, cafe, link, _ = february
    calculator = PayoutCalculator(db_session)

    first = await calculator.calculate(partner.id, date(2026, 2, 1), date(2026, 2, 28), actor)
    old_fingerprint = first.payout.snapshot_fingerprint

    await add_conversion(link, cafe, "feb-late", "40.00", attributed_at=utc(2026, 2, 20))
    second = await calculator.calculate(partner.id, date(2026, 2, 1), date(2026, 2, 28), actor)

    assert second.outcome == CalculationOutcome.RECALCULATED
    assert second.payout.total_conversions == 4
    assert second.payout.total_commission == Decimal("24.5")
    assert second.payout.snapshot_fingerprint != old_fingerprint

    actions = (await db_session.execute(
        select(AuditLog.action)
        .where(AuditLog.entity_id == str(first.payout.id))
        .order_by(AuditLog.created_at)
    )).scalars().all()
    assert actions == ["CALCULATE", "RECALCULATE"]


async def test_approved_payout_is_not_recalculated(db_session, february, add_conversion, actor):
    partner, cafe, link, _ = february
    calculator = PayoutCalculator(db_session)

    first = await calculator.calculate(partner.id, date(2026, 2, 1), date(2026, 2, 28), actor)
    await PayoutStateMachine(db_session).approve(
        first.payout.id, first.payout.snapshot_fingerprint, "finance@qetta.com"
    )

    await add_conversion(link, cafe, "feb-late", "40.00", attributed_at=utc(2026, 2, 20))
    again = await calculator.calculate(partner.id, date(2026, 2, 1), date(2026, 2, 28), actor)

    assert again.outcome == CalculationOutcome.UNCHANGED
    assert again.payout.id == first.payout.id
    assert again.payout.status == "APPROVED"
    assert again.payout.total_conversions == 3
    assert len(again.conversions) == 3


async def test_partner_without_conversions(db_session, make_partner, actor):
    partner = await make_partner()
    result = await PayoutCalculator(db_session).calculate(
        partner.id, date(2026, 2, 1), date(2026, 2, 28), actor
    )

    assert result.payout.total_conversions == 0
    assert result.payout.total_commission == Decimal("0")
    assert result.payout.conversion_ids == []


async def test_includes_all_cafes_of_partner(db_session, february, make_cafe, make_link, add_conversion, actor):
    partner, _, _, _ = february
    second_cafe = await make_cafe(partner, commission_rate="0.10", cafe_name="Dev Cafe")
    second_link = await make_link(second_cafe)
    await add_conversion(second_link, second_cafe, "feb-dev", "100.00", attributed_at=utc(2026, 2, 5))

    result = await PayoutCalculator(db_session).calculate(
        partner.id, date(2026, 2, 1), date(2026, 2, 28), actor
    )
    assert result.payout.total_conversions == 4
    assert result.payout.total_commission == Decimal("32.5")


async def test_unknown_partner(db_session, actor):
    with pytest.raises(NotFoundError):
        await PayoutCalculator(db_session).calculate(
            uuid.uuid4(), date(2026, 2, 1), date(2026, 2, 28), actor
        )
