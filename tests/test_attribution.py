import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from referral_ledger.core.exceptions import AlreadyAttributedError, LinkNotFoundError, NotFoundError
from referral_ledger.core.fingerprint import hash_client_value
from referral_ledger.models.audit_log import AuditLog
from referral_ledger.models.referral import ReferralConversion
from referral_ledger.schemas.referral import ClientMeta, ReferralCafeUpdate, SubscriptionMeta
from referral_ledger.services.attribution_service import AttributionService, compute_commission
from referral_ledger.services.partner_service import PartnerService
from tests.conftest import TEST_IP, TEST_UA


def test_compute_commission_is_exact():
    assert compute_commission(Decimal("150.00"), Decimal("0.0500")) == Decimal("7.5")
    assert compute_commission(Decimal("9.99"), Decimal("0.1234")) == Decimal("1.232766")


class TestAttribute:
    async def test_attribute_captures_rate_and_hashes(self, db_session, referral_setup, client_meta):
        _, cafe, link = referral_setup

        conversion = await AttributionService(db_session).attribute(
            "user-1",
            link.id,
            client_meta,
            SubscriptionMeta(subscription_id="sub-1", plan_type="PRO"),
            Decimal("100.00"),
        )

        assert conversion.user_id == "user-1"
        assert conversion.link_id == link.id
        assert conversion.commission_rate == Decimal("0.05")
        assert conversion.commission_amount == Decimal("5")
        assert conversion.ip_hash == hash_client_value(TEST_IP)
        assert conversion.user_agent_hash == hash_client_value(TEST_UA)
        assert conversion.plan_type == "PRO"

    async def test_attribute_writes_audit(self, db_session, referral_setup, client_meta):
        _, _, link = referral_setup
        conversion = await AttributionService(db_session).attribute(
            "user-audit", link.id, client_meta, None, Decimal("10.00")
        )

        entry = (await db_session.execute(
            select(AuditLog).where(AuditLog.entity_id == str(conversion.id))
        )).scalar_one()
        assert entry.action == "ATTRIBUTE"
        assert entry.actor_id == "system"
        assert entry.metadata_["short_code"] == link.short_code

    async def test_first_touch_wins(self, db_session, referral_setup, make_link, client_meta):
        _, cafe, link = referral_setup
        other_link = await make_link(cafe)
        service = AttributionService(db_session)

        first = await service.attribute("user-2", link.id, client_meta, None, Decimal("50.00"))

        with pytest.raises(AlreadyAttributedError) as exc_info:
            await service.attribute("user-2", other_link.id, client_meta, None, Decimal("80.00"))

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["existing_conversion_id"] == str(first.id)
        assert exc_info.value.details["existing_link_id"] == str(link.id)

        count = (await db_session.execute(
            select(func.count(ReferralConversion.id)).where(ReferralConversion.user_id == "user-2")
        )).scalar()
        assert count == 1

    async def test_concurrent_insert_maps_to_already_attributed(
        self, db_session, referral_setup, client_meta, monkeypatch
    ):
        _, _, link = referral_setup
        service = AttributionService(db_session)
        winner = await service.attribute("user-race", link.id, client_meta, None, Decimal("20.00"))
        winner_id = winner.id

        real_lookup = service.get_conversion_for_user
        calls = {"n": 0}

        async def stale_then_real(user_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None  # pre-check ran before the other insert committed
            return await real_lookup(user_id)

        monkeypatch.setattr(service, "get_conversion_for_user", stale_then_real)

        with pytest.raises(AlreadyAttributedError) as exc_info:
            await service.attribute("user-race", link.id, client_meta, None, Decimal("20.00"))
        assert exc_info.value.details["existing_conversion_id"] == str(winner_id)

    async def test_rate_change_does_not_rewrite_history(
        self, db_session, referral_setup, client_meta, actor
    ):
        _, cafe, link = referral_setup
        service = AttributionService(db_session)
        before = await service.attribute("user-3", link.id, client_meta, None, Decimal("100.00"))

        await PartnerService(db_session).update_cafe(
            cafe.id, ReferralCafeUpdate(commission_rate=Decimal("0.10")), actor
        )
        after = await service.attribute("user-4", link.id, client_meta, None, Decimal("100.00"))

        await db_session.refresh(before)
        assert before.commission_amount == Decimal("5")
        assert after.commission_amount == Decimal("10")

    async def test_unknown_link(self, db_session, client_meta):
        with pytest.raises(LinkNotFoundError):
            await AttributionService(db_session).attribute(
                "user-5", uuid.uuid4(), client_meta, None, Decimal("10.00")
            )


class TestFallbackAttribution:
    async def test_outside_window_not_found(self, db_session, referral_setup, add_conversion, days_ago, client_meta):
        _, cafe, link = referral_setup
        await add_conversion(link, cafe, "user-old", "30.00", attributed_at=days_ago(8))

        with pytest.raises(NotFoundError):
            await AttributionService(db_session).find_fallback_attribution(client_meta, within_days=7)

    async def test_inside_window_found(self, db_session, referral_setup, add_conversion, days_ago, client_meta):
        _, cafe, link = referral_setup
        conversion = await add_conversion(link, cafe, "user-recent", "30.00", attributed_at=days_ago(6))

        found = await AttributionService(db_session).find_fallback_attribution(client_meta, within_days=7)
        assert found.id == conversion.id

    async def test_most_recent_match_wins(self, db_session, referral_setup, add_conversion, days_ago, client_meta):
        _, cafe, link = referral_setup
        await add_conversion(link, cafe, "user-a", "30.00", attributed_at=days_ago(5))
        newest = await add_conversion(link, cafe, "user-b", "30.00", attributed_at=days_ago(1))

        found = await AttributionService(db_session).find_fallback_attribution(client_meta)
        assert found.id == newest.id

    async def test_different_client_not_found(self, db_session, referral_setup, add_conversion, days_ago):
        _, cafe, link = referral_setup
        await add_conversion(link, cafe, "user-c", "30.00", attributed_at=days_ago(1))

        other = ClientMeta(ip_address="192.0.2.1", user_agent=TEST_UA)
        with pytest.raises(NotFoundError):
            await AttributionService(db_session).find_fallback_attribution(other)
