"""
First-touch attribution.

A user is attributed to at most one link for the lifetime of the system.
The pre-check gives a friendly error in the common case; the unique
constraint on referral_conversions.user_id settles concurrent attempts.
Commission is computed from the cafe's rate at attribution time and
captured on the conversion, so later rate changes never rewrite history.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from referral_ledger.config import settings
from referral_ledger.core.clock import utcnow
from referral_ledger.core.exceptions import AlreadyAttributedError, LinkNotFoundError, NotFoundError
from referral_ledger.core.fingerprint import hash_client_value
from referral_ledger.models.referral import ReferralConversion, ReferralLink
from referral_ledger.schemas.referral import ClientMeta, SubscriptionMeta
from referral_ledger.services.audit_service import SYSTEM_ACTOR, Actor, AuditService, model_snapshot


logger = logging.getLogger(__name__)


def compute_commission(amount: Decimal, rate: Decimal) -> Decimal:
    """Exact amount × rate. Rounding happens only at payment time."""
    return Decimal(amount) * Decimal(rate)


class AttributionService:
    """Service for conversion attribution"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def get_conversion_for_user(self, user_id: str) -> Optional[ReferralConversion]:
        result = await self.db.execute(
            select(ReferralConversion).where(ReferralConversion.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def attribute(
        self,
        user_id: str,
        link_id: uuid.UUID,
        client: ClientMeta,
        subscription: Optional[SubscriptionMeta],
        amount: Decimal,
        actor: Optional[Actor] = None,
    ) -> ReferralConversion:
        """
        Attribute a subscription to the link the user arrived through.

        Flow:
        1. Reject if the user already has a conversion (first-touch)
        2. Load link + cafe
        3. commission = amount × cafe.commission_rate (rate captured now)
        4. Insert conversion + audit record in one transaction
        """
        actor = actor or SYSTEM_ACTOR
        subscription = subscription or SubscriptionMeta()

        existing = await self.get_conversion_for_user(user_id)
        if existing:
            logger.warning(
                f"Attribution rejected for user {user_id}: already attributed to link "
                f"{existing.link_id} at {existing.attributed_at.isoformat()}"
            )
            raise AlreadyAttributedError(user_id, existing)

        link = (await self.db.execute(
            select(ReferralLink)
            .options(selectinload(ReferralLink.cafe))
            .where(ReferralLink.id == link_id)
        )).scalar_one_or_none()
        if not link:
            raise LinkNotFoundError(link_id)

        rate = link.cafe.commission_rate
        conversion = ReferralConversion(
            user_id=user_id,
            link_id=link.id,
            ip_hash=hash_client_value(client.ip_address),
            user_agent_hash=hash_client_value(client.user_agent),
            attributed_at=utcnow(),
            subscription_id=subscription.subscription_id,
            plan_type=subscription.plan_type,
            amount=amount,
            commission_rate=rate,
            commission_amount=compute_commission(amount, rate),
        )
        self.db.add(conversion)

        try:
            await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent attribution for the same user
            await self.db.rollback()
            winner = await self.get_conversion_for_user(user_id)
            logger.warning(f"Concurrent attribution for user {user_id} rejected")
            raise AlreadyAttributedError(user_id, winner)

        try:
            await self.audit.record(
                "REFERRAL_CONVERSION", conversion.id, "ATTRIBUTE", actor,
                after=model_snapshot(conversion),
                metadata={"cafe_id": link.cafe_id, "short_code": link.short_code},
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self.get_conversion_for_user(user_id)
            logger.warning(f"Concurrent attribution for user {user_id} rejected")
            raise AlreadyAttributedError(user_id, winner)
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(conversion)
        logger.info(
            f"Conversion attributed: user {user_id} -> link {link.short_code} "
            f"amount={conversion.amount} commission={conversion.commission_amount}"
        )
        return conversion

    async def find_fallback_attribution(
        self,
        client: ClientMeta,
        within_days: Optional[int] = None,
    ) -> ReferralConversion:
        """
        Best-effort lookup when the referral cookie is missing: the most recent
        conversion from the same hashed IP and user-agent inside the window.
        Never creates a conversion.
        """
        within_days = within_days or settings.FALLBACK_ATTRIBUTION_WINDOW_DAYS
        ip_hash = hash_client_value(client.ip_address)
        user_agent_hash = hash_client_value(client.user_agent)
        window_start = utcnow() - timedelta(days=within_days)

        result = await self.db.execute(
            select(ReferralConversion)
            .where(
                ReferralConversion.ip_hash == ip_hash,
                ReferralConversion.user_agent_hash == user_agent_hash,
                ReferralConversion.attributed_at >= window_start,
            )
            .order_by(ReferralConversion.attributed_at.desc())
            .limit(1)
        )
        conversion = result.scalar_one_or_none()
        if not conversion:
            raise NotFoundError(
                "Conversion",
                message=f"No matching conversion in the last {within_days} days",
            )
        return conversion
