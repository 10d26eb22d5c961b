"""
Referral link registry.

Short codes are drawn from SHORT_CODE_ALPHABET with a cryptographic RNG and
checked for collisions before insert. Click counters are only ever
incremented in SQL (clicks = clicks + 1) so concurrent clicks never lose
updates. Raw client IP / user-agent values are hashed on arrival.
"""
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.config import settings
from referral_ledger.core.clock import utcnow
from referral_ledger.core.enum_utils import get_enum_value
from referral_ledger.core.exceptions import (
    LinkExpiredError,
    LinkInactiveError,
    LinkNotFoundError,
    NotFoundError,
    ShortCodeExhaustedError,
    StateMismatchError,
)
from referral_ledger.core.fingerprint import hash_client_value
from referral_ledger.core.pagination import Page, paginate
from referral_ledger.models.referral import LinkStatus, ReferralCafe, ReferralLink
from referral_ledger.schemas.referral import ClickResult, ClientMeta, ReferralLinkCreate
from referral_ledger.services.audit_service import Actor, AuditService, model_snapshot


logger = logging.getLogger(__name__)


class LinkService:
    """Service for referral link operations"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # ========================================================================
    # Short Code Generation
    # ========================================================================

    def _random_code(self) -> str:
        alphabet = settings.SHORT_CODE_ALPHABET
        return ''.join(secrets.choice(alphabet) for _ in range(settings.SHORT_CODE_LENGTH))

    async def generate_short_code(self) -> str:
        """
        Generate a unique short code, e.g. K7M2QX9A.

        Raises ShortCodeExhaustedError after SHORT_CODE_MAX_ATTEMPTS collisions.
        """
        for _ in range(settings.SHORT_CODE_MAX_ATTEMPTS):
            code = self._random_code()

            result = await self.db.execute(
                select(ReferralLink.id).where(ReferralLink.short_code == code)
            )
            if not result.scalar_one_or_none():
                return code

        logger.error(f"Short code generation exhausted after {settings.SHORT_CODE_MAX_ATTEMPTS} attempts")
        raise ShortCodeExhaustedError(settings.SHORT_CODE_MAX_ATTEMPTS)

    @staticmethod
    def build_url(short_code: str) -> str:
        return f"{settings.LINK_BASE_URL.rstrip('/')}/r/{short_code}"

    # ========================================================================
    # Link lifecycle
    # ========================================================================

    async def create_link(self, data: ReferralLinkCreate, actor: Actor) -> ReferralLink:
        """
        Create a trackable link for a cafe.

        Flow:
        1. Verify the cafe exists
        2. Allocate a unique short code
        3. Persist link + audit record in one transaction
        """
        cafe = await self.db.get(ReferralCafe, data.cafe_id)
        if not cafe:
            raise NotFoundError("Cafe", data.cafe_id)

        short_code = await self.generate_short_code()
        ttl_days = data.expires_in_days or settings.DEFAULT_LINK_TTL_DAYS

        link = ReferralLink(
            cafe_id=cafe.id,
            short_code=short_code,
            full_url=self.build_url(short_code),
            utm_source=data.utm_source,
            utm_medium=data.utm_medium,
            utm_campaign=data.utm_campaign,
            clicks=0,
            status=LinkStatus.ACTIVE.value,
            expires_at=utcnow() + timedelta(days=ttl_days),
        )
        self.db.add(link)

        try:
            await self.db.flush()
            await self.audit.record(
                "REFERRAL_LINK", link.id, "CREATE", actor,
                after=model_snapshot(link),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(link)
        logger.info(f"Referral link created: {link.short_code} for cafe {cafe.id} (ttl {ttl_days}d)")
        return link

    async def get_link(self, link_id: uuid.UUID) -> ReferralLink:
        link = await self.db.get(ReferralLink, link_id)
        if not link:
            raise LinkNotFoundError(link_id)
        return link

    async def get_link_by_code(self, short_code: str) -> Optional[ReferralLink]:
        result = await self.db.execute(
            select(ReferralLink).where(ReferralLink.short_code == short_code)
        )
        return result.scalar_one_or_none()

    async def resolve_link(self, short_code: str) -> ReferralLink:
        """
        Resolve a short code to a usable link.

        Raises:
            NotFoundError: unknown code
            LinkInactiveError: stored status is not ACTIVE
            LinkExpiredError: expires_at has passed, whatever the stored status
        """
        link = await self.get_link_by_code(short_code)
        if not link:
            raise LinkNotFoundError(short_code)

        if link.status != LinkStatus.ACTIVE.value:
            raise LinkInactiveError(short_code, link.status)

        if link.is_expired():
            raise LinkExpiredError(short_code, link.expires_at)

        return link

    async def record_click(self, short_code: str, client: ClientMeta) -> ClickResult:
        """
        Count a click and return the redirect target plus hashed client identity.

        The referer is optional and never stored.
        """
        try:
            result = await self.db.execute(
                update(ReferralLink)
                .where(ReferralLink.short_code == short_code)
                .values(clicks=ReferralLink.clicks + 1)
            )
            if result.rowcount == 0:
                raise LinkNotFoundError(short_code)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        link = (await self.db.execute(
            select(ReferralLink)
            .where(ReferralLink.short_code == short_code)
            .execution_options(populate_existing=True)
        )).scalar_one()

        logger.debug(f"Click on {short_code}: {link.clicks} total")

        return ClickResult(
            link_id=link.id,
            short_code=link.short_code,
            redirect_url=link.full_url,
            clicks=link.clicks,
            ip_hash=hash_client_value(client.ip_address),
            user_agent_hash=hash_client_value(client.user_agent),
        )

    async def revoke_link(self, link_id: uuid.UUID, actor: Actor) -> ReferralLink:
        """Permanently disable a link. Revoking twice is a state mismatch."""
        link = await self.get_link(link_id)
        if link.status == LinkStatus.REVOKED.value:
            raise StateMismatchError(
                "Referral link",
                [LinkStatus.ACTIVE.value, LinkStatus.EXPIRED.value],
                link.status,
                link.id,
            )

        before = model_snapshot(link)
        link.status = LinkStatus.REVOKED.value

        try:
            await self.db.flush()
            await self.audit.record(
                "REFERRAL_LINK", link.id, "REVOKE", actor,
                before=before, after=model_snapshot(link),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(link)
        logger.info(f"Referral link revoked: {link.short_code}")
        return link

    async def list_links(
        self,
        cafe_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page[ReferralLink]:
        """
        List links, newest first.

        The status filter uses the effective status: ACTIVE excludes links
        past expires_at, EXPIRED includes them.
        """
        stmt = select(ReferralLink).order_by(ReferralLink.created_at.desc(), ReferralLink.id)

        if cafe_id:
            stmt = stmt.where(ReferralLink.cafe_id == cafe_id)

        status = get_enum_value(status)
        now = utcnow()
        if status == LinkStatus.ACTIVE.value:
            stmt = stmt.where(
                ReferralLink.status == LinkStatus.ACTIVE.value,
                ReferralLink.expires_at >= now,
            )
        elif status == LinkStatus.EXPIRED.value:
            stmt = stmt.where(
                or_(
                    ReferralLink.status == LinkStatus.EXPIRED.value,
                    and_(
                        ReferralLink.status == LinkStatus.ACTIVE.value,
                        ReferralLink.expires_at < now,
                    ),
                )
            )
        elif status:
            stmt = stmt.where(ReferralLink.status == status)

        return await paginate(self.db, stmt, page, page_size)
