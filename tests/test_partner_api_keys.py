import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from pydantic import ValidationError
from sqlalchemy import select

from referral_ledger.core.clock import as_utc, utcnow
from referral_ledger.core.exceptions import NotFoundError, StateMismatchError
from referral_ledger.core.fingerprint import sha256_hex
from referral_ledger.models.audit_log import AuditLog
from referral_ledger.schemas.referral import PartnerApiKeyCreate, ReferralPartnerUpdate
from referral_ledger.services.partner_service import PartnerService


def key_request(**overrides):
    values = {"permissions": ["read:cafes", "read:payouts"]}
    values.update(overrides)
    return PartnerApiKeyCreate(**values)


@pytest_asyncio.fixture
async def issued(db_session, make_partner, actor):
    partner = await make_partner()
    api_key, raw_key = await PartnerService(db_session).generate_api_key(partner.id, key_request(), actor)
    return partner, api_key, raw_key


class TestApiKeySchemas:
    def test_needs_a_permission(self):
        with pytest.raises(ValidationError):
            PartnerApiKeyCreate(permissions=[])

    def test_unknown_permission(self):
        with pytest.raises(ValidationError):
            PartnerApiKeyCreate(permissions=["admin:all"])

    def test_expiry_capped_at_a_year(self):
        with pytest.raises(ValidationError):
            key_request(expires_in_days=400)


class TestGenerate:
    async def test_only_hash_is_stored(self, issued):
        partner, api_key, raw_key = issued

        assert raw_key.startswith("pk_")
        assert len(raw_key) == 67
        assert api_key.key_hash == sha256_hex(raw_key)
        assert api_key.key_prefix == raw_key[:12]
        assert api_key.partner_id == partner.id
        assert api_key.status == "ACTIVE"
        assert api_key.permissions == ["read:cafes", "read:payouts"]

    async def test_default_expiry(self, issued):
        _, api_key, _ = issued
        remaining = as_utc(api_key.expires_at) - utcnow()
        assert timedelta(days=364) < remaining <= timedelta(days=365)

    async def test_keys_are_unique(self, db_session, issued, actor):
        partner, first, first_raw = issued
        second, second_raw = await PartnerService(db_session).generate_api_key(partner.id, key_request(), actor)

        assert first_raw != second_raw
        assert first.key_hash != second.key_hash

    async def test_audit_never_holds_the_hash(self, db_session, issued):
        _, api_key, raw_key = issued
        entry = (await db_session.execute(
            select(AuditLog).where(AuditLog.entity_type == "PARTNER_API_KEY", AuditLog.entity_id == str(api_key.id))
        )).scalar_one()

        assert entry.action == "GENERATE_KEY"
        assert entry.after_state["key_prefix"] == api_key.key_prefix
        assert "key_hash" not in entry.after_state
        assert raw_key not in str(entry.after_state)

    async def test_requires_active_partner(self, db_session, make_partner, actor):
        service = PartnerService(db_session)
        partner = await make_partner()
        await service.update_partner(partner.id, ReferralPartnerUpdate(status="SUSPENDED"), actor)

        with pytest.raises(StateMismatchError):
            await service.generate_api_key(partner.id, key_request(), actor)

    async def test_unknown_partner(self, db_session, actor):
        with pytest.raises(NotFoundError):
            await PartnerService(db_session).generate_api_key(uuid.uuid4(), key_request(), actor)

    async def test_list_keys(self, db_session, issued, make_partner, actor):
        partner, api_key, _ = issued
        other = await make_partner()
        await PartnerService(db_session).generate_api_key(other.id, key_request(), actor)

        keys = await PartnerService(db_session).list_api_keys(partner.id)
        assert [k.id for k in keys] == [api_key.id]


class TestVerify:
    async def test_valid_key(self, db_session, issued):
        partner, api_key, raw_key = issued
        assert api_key.last_used_at is None

        result = await PartnerService(db_session).verify_api_key(raw_key)

        assert result["valid"] is True
        assert result["key_id"] == api_key.id
        assert result["partner_id"] == partner.id
        assert result["permissions"] == ["read:cafes", "read:payouts"]
        assert result["rate_limit"] == 100
        assert api_key.last_used_at is not None

    async def test_unknown_key(self, db_session, issued):
        result = await PartnerService(db_session).verify_api_key("pk_" + "0" * 64)
        assert result == {"valid": False, "reason": "Invalid API key"}

    async def test_revoked_key(self, db_session, issued, actor):
        _, api_key, raw_key = issued
        service = PartnerService(db_session)
        await service.revoke_api_key(api_key.id, actor)

        result = await service.verify_api_key(raw_key)
        assert result == {"valid": False, "reason": "API key revoked"}

    async def test_expired_key(self, db_session, issued):
        _, api_key, raw_key = issued
        api_key.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()

        result = await PartnerService(db_session).verify_api_key(raw_key)
        assert result == {"valid": False, "reason": "API key expired"}

    async def test_inactive_partner(self, db_session, issued, actor):
        partner, api_key, raw_key = issued
        service = PartnerService(db_session)
        await service.update_partner(partner.id, ReferralPartnerUpdate(status="INACTIVE"), actor)

        result = await service.verify_api_key(raw_key)
        assert result == {"valid": False, "reason": "Partner account inactive"}
        assert api_key.last_used_at is None


class TestRevoke:
    async def test_revoke_keeps_row(self, db_session, issued, actor):
        _, api_key, _ = issued
        revoked = await PartnerService(db_session).revoke_api_key(api_key.id, actor)

        assert revoked.id == api_key.id
        assert revoked.status == "REVOKED"
        assert revoked.revoked_at is not None

        actions = (await db_session.execute(
            select(AuditLog.action)
            .where(AuditLog.entity_type == "PARTNER_API_KEY", AuditLog.entity_id == str(api_key.id))
        )).scalars().all()
        assert sorted(actions) == ["GENERATE_KEY", "REVOKE_KEY"]

    async def test_revoke_twice(self, db_session, issued, actor):
        _, api_key, _ = issued
        service = PartnerService(db_session)
        await service.revoke_api_key(api_key.id, actor)

        with pytest.raises(StateMismatchError) as exc_info:
            await service.revoke_api_key(api_key.id, actor)
        assert exc_info.value.details["actual_status"] == "REVOKED"

    async def test_revoke_unknown(self, db_session, actor):
        with pytest.raises(NotFoundError):
            await PartnerService(db_session).revoke_api_key(uuid.uuid4(), actor)
