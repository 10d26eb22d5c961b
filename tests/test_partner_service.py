import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from referral_ledger.core.exceptions import ConflictError, NotFoundError, StateMismatchError
from referral_ledger.schemas.referral import (
    ReferralCafeCreate,
    ReferralCafeUpdate,
    ReferralPartnerCreate,
    ReferralPartnerUpdate,
)
from referral_ledger.services.partner_service import PartnerService


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestPartnerSchemas:
    def test_business_number_format(self):
        with pytest.raises(ValidationError):
            ReferralPartnerCreate(
                org_id="org",
                org_name="Bad",
                business_number="1234567890",
                contact_email="a@example.com",
                contact_name="Kim",
            )

    def test_status_is_case_insensitive(self):
        assert ReferralPartnerUpdate(status="suspended").status == "SUSPENDED"
        assert ReferralCafeUpdate(status="inactive").status == "INACTIVE"

    def test_commission_rate_bounds(self):
        with pytest.raises(ValidationError):
            ReferralCafeCreate(partner_id=uuid.uuid4(), cafe_name="Cafe", commission_rate=Decimal("1.5"))


class TestPartners:
    async def test_create_and_get(self, db_session, make_partner):
        partner = await make_partner(org_name="Qetta Labs")

        fetched = await PartnerService(db_session).get_partner(partner.id)
        assert fetched.org_name == "Qetta Labs"
        assert fetched.status == "ACTIVE"

    async def test_duplicate_business_number(self, db_session, make_partner):
        await make_partner(business_number="111-22-33333")

        with pytest.raises(ConflictError) as exc_info:
            await make_partner(business_number="111-22-33333")
        assert exc_info.value.details["business_number"] == "111-22-33333"

    async def test_update_partner(self, db_session, make_partner, actor):
        partner = await make_partner()
        updated = await PartnerService(db_session).update_partner(
            partner.id, ReferralPartnerUpdate(status="inactive", contact_name="Choi"), actor
        )
        assert updated.status == "INACTIVE"
        assert updated.contact_name == "Choi"

    async def test_get_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            await PartnerService(db_session).get_partner(uuid.uuid4())

    async def test_list_partners_by_status(self, db_session, make_partner, actor):
        service = PartnerService(db_session)
        active = await make_partner()
        inactive = await make_partner()
        await service.update_partner(inactive.id, ReferralPartnerUpdate(status="INACTIVE"), actor)

        page = await service.list_partners(status="ACTIVE")
        assert [p.id for p in page.items] == [active.id]
        assert page.total == 1

    async def test_partner_stats(self, db_session, referral_setup, make_cafe, make_link, add_conversion, actor):
        partner, cafe, link = referral_setup
        second = await make_cafe(partner, commission_rate="0.10", cafe_name="Second")
        second_link = await make_link(second)
        await add_conversion(link, cafe, "u1", "100.00", attributed_at=utc(2026, 2, 1))
        await add_conversion(second_link, second, "u2", "100.00", attributed_at=utc(2026, 2, 2))
        await PartnerService(db_session).update_cafe(second.id, ReferralCafeUpdate(status="INACTIVE"), actor)

        stats = await PartnerService(db_session).get_partner_stats(partner.id)

        assert stats["active_cafes"] == 1
        assert stats["active_links"] == 2
        assert stats["total_conversions"] == 2
        assert stats["total_commission"] == Decimal("15")


class TestCafes:
    async def test_create_cafe(self, db_session, make_partner, make_cafe):
        partner = await make_partner()
        cafe = await make_cafe(partner, commission_rate="0.1500")

        assert cafe.partner_id == partner.id
        assert cafe.commission_rate == Decimal("0.15")
        assert cafe.status == "ACTIVE"

    async def test_cafe_requires_active_partner(self, db_session, make_partner, actor):
        service = PartnerService(db_session)
        partner = await make_partner()
        await service.update_partner(partner.id, ReferralPartnerUpdate(status="SUSPENDED"), actor)

        with pytest.raises(StateMismatchError):
            await service.create_cafe(
                ReferralCafeCreate(partner_id=partner.id, cafe_name="Cafe", commission_rate=Decimal("0.05")),
                actor,
            )

    async def test_list_cafes(self, db_session, make_partner, make_cafe):
        partner = await make_partner()
        await make_cafe(partner, cafe_name="One")
        await make_cafe(partner, cafe_name="Two")

        page = await PartnerService(db_session).list_cafes(partner.id)
        assert {c.cafe_name for c in page.items} == {"One", "Two"}

    async def test_unknown_cafe(self, db_session):
        with pytest.raises(NotFoundError):
            await PartnerService(db_session).get_cafe(uuid.uuid4())
