"""
Referral partner and cafe administration.

Partners are organizations paid for referred subscriptions; cafes are the
communities they run, each carrying its own commission rate. Partners can
also hold API keys for their own integrations. Partners are never deleted,
only deactivated. Every mutation is audited in the same transaction.
"""
import logging
import secrets
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.core.clock import utcnow
from referral_ledger.core.enum_utils import get_enum_value
from referral_ledger.core.exceptions import ConflictError, NotFoundError, StateMismatchError
from referral_ledger.core.fingerprint import sha256_hex
from referral_ledger.core.pagination import Page, paginate
from referral_ledger.models.referral import (
    ApiKeyStatus,
    CafeStatus,
    LinkStatus,
    PartnerApiKey,
    PartnerStatus,
    ReferralCafe,
    ReferralConversion,
    ReferralLink,
    ReferralPartner,
)
from referral_ledger.schemas.referral import (
    PartnerApiKeyCreate,
    ReferralCafeCreate,
    ReferralCafeUpdate,
    ReferralPartnerCreate,
    ReferralPartnerUpdate,
)
from referral_ledger.services.audit_service import Actor, AuditService, model_snapshot


logger = logging.getLogger(__name__)


API_KEY_PREFIX = "pk_"
API_KEY_DISPLAY_LENGTH = 12  # "pk_" + 9 hex chars


def generate_raw_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


class PartnerService:
    """Service for referral partner and cafe operations"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # ========================================================================
    # Partners
    # ========================================================================

    async def create_partner(self, data: ReferralPartnerCreate, actor: Actor) -> ReferralPartner:
        """Register a partner organization. Business numbers are unique."""
        existing = await self.db.execute(
            select(ReferralPartner.id).where(
                ReferralPartner.business_number == data.business_number
            )
        )
        if existing.scalar_one_or_none():
            raise ConflictError(
                "Partner with this business number already exists",
                {"business_number": data.business_number},
            )

        partner = ReferralPartner(
            org_id=data.org_id,
            org_name=data.org_name,
            business_number=data.business_number,
            contact_email=str(data.contact_email),
            contact_name=data.contact_name,
            status=PartnerStatus.ACTIVE.value,
        )
        self.db.add(partner)

        try:
            await self.db.flush()
            await self.audit.record(
                "REFERRAL_PARTNER", partner.id, "CREATE", actor,
                after=model_snapshot(partner),
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                "Partner with this business number already exists",
                {"business_number": data.business_number},
            )

        await self.db.refresh(partner)
        logger.info(f"Referral partner created: {partner.org_name} ({partner.business_number})")
        return partner

    async def update_partner(
        self,
        partner_id: uuid.UUID,
        data: ReferralPartnerUpdate,
        actor: Actor,
    ) -> ReferralPartner:
        partner = await self.get_partner(partner_id)
        before = model_snapshot(partner)

        update_data = data.model_dump(exclude_unset=True)
        for field, value in update_data.items():
            if field == "contact_email" and value is not None:
                value = str(value)
            setattr(partner, field, get_enum_value(value) if field == "status" else value)

        try:
            await self.db.flush()
            await self.audit.record(
                "REFERRAL_PARTNER", partner.id, "UPDATE", actor,
                before=before, after=model_snapshot(partner),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(partner)
        logger.info(f"Referral partner updated: {partner.id} fields={sorted(update_data)}")
        return partner

    async def get_partner(self, partner_id: uuid.UUID) -> ReferralPartner:
        partner = await self.db.get(ReferralPartner, partner_id)
        if not partner:
            raise NotFoundError("Partner", partner_id)
        return partner

    async def list_partners(
        self,
        status: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page[ReferralPartner]:
        stmt = select(ReferralPartner).order_by(ReferralPartner.created_at.desc(), ReferralPartner.id)
        if status:
            stmt = stmt.where(ReferralPartner.status == get_enum_value(status))
        return await paginate(self.db, stmt, page, page_size)

    async def get_partner_stats(self, partner_id: uuid.UUID) -> dict:
        """Active cafes, active links, conversions and commission across all cafes."""
        await self.get_partner(partner_id)

        active_cafes = (await self.db.execute(
            select(func.count(ReferralCafe.id)).where(
                ReferralCafe.partner_id == partner_id,
                ReferralCafe.status == CafeStatus.ACTIVE.value,
            )
        )).scalar() or 0

        cafe_ids = select(ReferralCafe.id).where(ReferralCafe.partner_id == partner_id)

        active_links = (await self.db.execute(
            select(func.count(ReferralLink.id)).where(
                ReferralLink.cafe_id.in_(cafe_ids),
                ReferralLink.status == LinkStatus.ACTIVE.value,
                ReferralLink.expires_at >= utcnow(),
            )
        )).scalar() or 0

        link_ids = select(ReferralLink.id).where(ReferralLink.cafe_id.in_(cafe_ids))
        commissions = (await self.db.execute(
            select(ReferralConversion.commission_amount).where(
                ReferralConversion.link_id.in_(link_ids)
            )
        )).scalars().all()

        return {
            "partner_id": partner_id,
            "active_cafes": active_cafes,
            "active_links": active_links,
            "total_conversions": len(commissions),
            "total_commission": sum(commissions, Decimal("0")),
        }

    # ========================================================================
    # Cafes
    # ========================================================================

    async def create_cafe(self, data: ReferralCafeCreate, actor: Actor) -> ReferralCafe:
        """Add a cafe to an active partner."""
        partner = await self.get_partner(data.partner_id)
        if partner.status != PartnerStatus.ACTIVE.value:
            raise StateMismatchError("Partner", PartnerStatus.ACTIVE.value, partner.status, partner.id)

        cafe = ReferralCafe(
            partner_id=partner.id,
            cafe_name=data.cafe_name,
            commission_rate=data.commission_rate,
            status=CafeStatus.ACTIVE.value,
        )
        self.db.add(cafe)

        try:
            await self.db.flush()
            await self.audit.record(
                "REFERRAL_CAFE", cafe.id, "CREATE", actor,
                after=model_snapshot(cafe),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(cafe)
        logger.info(f"Referral cafe created: {cafe.cafe_name} rate={cafe.commission_rate}")
        return cafe

    async def update_cafe(
        self,
        cafe_id: uuid.UUID,
        data: ReferralCafeUpdate,
        actor: Actor,
    ) -> ReferralCafe:
        """
        Update a cafe. A new commission rate only applies to conversions
        attributed afterwards; existing conversions keep their captured rate.
        """
        cafe = await self.get_cafe(cafe_id)
        before = model_snapshot(cafe)

        update_data = data.model_dump(exclude_unset=True)
        for field, value in update_data.items():
            setattr(cafe, field, get_enum_value(value) if field == "status" else value)

        try:
            await self.db.flush()
            await self.audit.record(
                "REFERRAL_CAFE", cafe.id, "UPDATE", actor,
                before=before, after=model_snapshot(cafe),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(cafe)
        if "commission_rate" in update_data:
            logger.info(
                f"Cafe {cafe.id} commission rate changed "
                f"{before['commission_rate']} -> {cafe.commission_rate}"
            )
        return cafe

    async def get_cafe(self, cafe_id: uuid.UUID) -> ReferralCafe:
        cafe = await self.db.get(ReferralCafe, cafe_id)
        if not cafe:
            raise NotFoundError("Cafe", cafe_id)
        return cafe

    async def list_cafes(
        self,
        partner_id: uuid.UUID,
        status: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page[ReferralCafe]:
        stmt = (
            select(ReferralCafe)
            .where(ReferralCafe.partner_id == partner_id)
            .order_by(ReferralCafe.created_at.desc(), ReferralCafe.id)
        )
        if status:
            stmt = stmt.where(ReferralCafe.status == get_enum_value(status))
        return await paginate(self.db, stmt, page, page_size)

    # ========================================================================
    # API keys
    # ========================================================================

    async def generate_api_key(
        self,
        partner_id: uuid.UUID,
        data: PartnerApiKeyCreate,
        actor: Actor,
    ) -> tuple[PartnerApiKey, str]:
        """
        Issue an API key for an active partner.

        Returns the stored key and the raw key. Only the sha256 of the raw
        key is persisted, so the caller must hand it out now or never.
        """
        partner = await self.get_partner(partner_id)
        if partner.status != PartnerStatus.ACTIVE.value:
            raise StateMismatchError("Partner", PartnerStatus.ACTIVE.value, partner.status, partner.id)

        raw_key = generate_raw_api_key()
        api_key = PartnerApiKey(
            partner_id=partner.id,
            key_hash=sha256_hex(raw_key),
            key_prefix=raw_key[:API_KEY_DISPLAY_LENGTH],
            key_type="partner",
            permissions=[get_enum_value(p) for p in data.permissions],
            rate_limit=data.rate_limit,
            status=ApiKeyStatus.ACTIVE.value,
            expires_at=utcnow() + timedelta(days=data.expires_in_days),
        )
        self.db.add(api_key)

        try:
            await self.db.flush()
            await self.audit.record(
                "PARTNER_API_KEY", api_key.id, "GENERATE_KEY", actor,
                after=model_snapshot(api_key, ["id", "partner_id", "key_prefix", "permissions", "expires_at"]),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(api_key)
        logger.info(f"API key issued: {api_key.key_prefix}... for partner {partner.id}")
        return api_key, raw_key

    async def get_api_key(self, key_id: uuid.UUID) -> PartnerApiKey:
        api_key = await self.db.get(PartnerApiKey, key_id)
        if not api_key:
            raise NotFoundError("API key", key_id)
        return api_key

    async def list_api_keys(self, partner_id: uuid.UUID) -> list[PartnerApiKey]:
        await self.get_partner(partner_id)
        result = await self.db.execute(
            select(PartnerApiKey)
            .where(PartnerApiKey.partner_id == partner_id)
            .order_by(PartnerApiKey.created_at.desc(), PartnerApiKey.id)
        )
        return list(result.scalars().all())

    async def revoke_api_key(self, key_id: uuid.UUID, actor: Actor) -> PartnerApiKey:
        """ACTIVE -> REVOKED. The row is kept so the audit trail can point at it."""
        api_key = await self.get_api_key(key_id)
        if api_key.status != ApiKeyStatus.ACTIVE.value:
            raise StateMismatchError("API key", ApiKeyStatus.ACTIVE.value, api_key.status, api_key.id)

        before = model_snapshot(api_key, ["id", "key_prefix", "permissions", "status"])
        api_key.status = ApiKeyStatus.REVOKED.value
        api_key.revoked_at = utcnow()

        try:
            await self.db.flush()
            await self.audit.record(
                "PARTNER_API_KEY", api_key.id, "REVOKE_KEY", actor,
                before=before,
                after={"status": ApiKeyStatus.REVOKED.value},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(api_key)
        logger.info(f"API key revoked: {api_key.key_prefix}... by {actor.id}")
        return api_key

    async def verify_api_key(self, raw_key: str) -> dict:
        """
        Check a raw key presented by a partner integration.

        Unknown, revoked and expired keys and keys of inactive partners come
        back as {"valid": False, "reason": ...}. A valid key gets its
        last_used_at stamped.
        """
        result = await self.db.execute(
            select(PartnerApiKey).where(PartnerApiKey.key_hash == sha256_hex(raw_key))
        )
        api_key = result.scalar_one_or_none()

        if not api_key:
            return {"valid": False, "reason": "Invalid API key"}
        if api_key.status != ApiKeyStatus.ACTIVE.value:
            return {"valid": False, "reason": "API key revoked"}
        if api_key.is_expired():
            return {"valid": False, "reason": "API key expired"}

        partner = await self.get_partner(api_key.partner_id)
        if partner.status != PartnerStatus.ACTIVE.value:
            logger.warning(f"API key {api_key.key_prefix}... used by inactive partner {partner.id}")
            return {"valid": False, "reason": "Partner account inactive"}

        api_key.last_used_at = utcnow()
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return {
            "valid": True,
            "key_id": api_key.id,
            "partner_id": api_key.partner_id,
            "permissions": list(api_key.permissions),
            "rate_limit": api_key.rate_limit,
        }
