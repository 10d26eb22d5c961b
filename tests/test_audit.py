import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from referral_ledger.models.audit_log import AuditLog
from referral_ledger.models.referral import ReferralPartner
from referral_ledger.schemas.referral import ReferralPartnerCreate
from referral_ledger.services.audit_service import (
    SYSTEM_ACTOR,
    AuditService,
    json_safe,
    model_snapshot,
)
from referral_ledger.services.partner_service import PartnerService


def test_json_safe_converts_ledger_types():
    value = {
        "amount": Decimal("12.50"),
        "id": uuid.UUID("12345678-1234-5678-1234-567812345678"),
        "at": datetime(2026, 2, 1, tzinfo=timezone.utc),
        "nested": [Decimal("1.1")],
    }
    safe = json_safe(value)
    assert safe["amount"] == "12.50"
    assert safe["id"] == "12345678-1234-5678-1234-567812345678"
    assert safe["at"].startswith("2026-02-01T00:00:00")
    assert safe["nested"] == ["1.1"]
    assert json_safe(None) is None


async def test_record_and_query(db_session, actor):
    service = AuditService(db_session)
    entity_id = uuid.uuid4()

    entry_id = await service.record(
        "PAYOUT_LEDGER", entity_id, "APPROVE", actor,
        before={"status": "DRAFT"},
        after={"status": "APPROVED"},
        metadata={"fingerprint": "abc"},
    )
    await service.record("PAYOUT_LEDGER", uuid.uuid4(), "CALCULATE", SYSTEM_ACTOR)
    await db_session.commit()

    assert entry_id is not None

    page = await service.get_audit_logs(entity_type="PAYOUT_LEDGER", action="APPROVE")
    assert page.total == 1
    entry = page.items[0]
    assert entry.entity_id == str(entity_id)
    assert entry.actor_id == actor.id
    assert entry.actor_email == actor.email
    assert entry.before_state == {"status": "DRAFT"}
    assert entry.after_state == {"status": "APPROVED"}
    assert entry.metadata_ == {"fingerprint": "abc"}

    by_actor = await service.get_audit_logs(actor_id="system")
    assert by_actor.total == 1


async def test_model_snapshot_is_json_safe(db_session, make_partner):
    partner = await make_partner()
    snapshot = model_snapshot(partner)

    assert snapshot["id"] == str(partner.id)
    assert snapshot["business_number"] == partner.business_number
    assert isinstance(snapshot["created_at"], str)

    subset = model_snapshot(partner, ["status"])
    assert subset == {"status": "ACTIVE"}


async def test_audit_failure_does_not_abort_business_write(db_session, actor, monkeypatch, caplog):
    def broken_savepoint(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(db_session, "begin_nested", broken_savepoint)

    with caplog.at_level(logging.CRITICAL):
        partner = await PartnerService(db_session).create_partner(
            ReferralPartnerCreate(
                org_id="org-x",
                org_name="Resilient Partner",
                business_number="555-55-55555",
                contact_email="ops@resilient.example",
                contact_name="Park",
            ),
            actor,
        )

    assert partner.id is not None
    stored = (await db_session.execute(
        select(func.count(ReferralPartner.id)).where(ReferralPartner.business_number == "555-55-55555")
    )).scalar()
    assert stored == 1

    audits = (await db_session.execute(select(func.count(AuditLog.id)))).scalar()
    assert audits == 0
    assert any("audit log write failed" in r.message for r in caplog.records)


async def test_record_returns_none_on_failure(db_session, actor, monkeypatch):
    def broken_savepoint(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(db_session, "begin_nested", broken_savepoint)
    assert await AuditService(db_session).record("REFERRAL_LINK", uuid.uuid4(), "CREATE", actor) is None
