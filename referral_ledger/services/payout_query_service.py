"""Read side of the payout ledger."""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.core.enum_utils import get_enum_value
from referral_ledger.core.exceptions import NotFoundError
from referral_ledger.core.fingerprint import snapshot_fingerprint
from referral_ledger.core.pagination import Page, paginate
from referral_ledger.models.payout_ledger import PayoutLedgerEntry
from referral_ledger.services.payout_calculator import PayoutCalculator


logger = logging.getLogger(__name__)


class PayoutQueryService:
    """Service for payout lookups and snapshot checks"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_payout(self, payout_id: uuid.UUID) -> PayoutLedgerEntry:
        payout = await self.db.get(PayoutLedgerEntry, payout_id)
        if not payout:
            raise NotFoundError("Payout", payout_id)
        return payout

    async def list_payouts(
        self,
        partner_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        ledger_type: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page[PayoutLedgerEntry]:
        stmt = select(PayoutLedgerEntry).order_by(
            PayoutLedgerEntry.period_start.desc(),
            PayoutLedgerEntry.created_at.desc(),
            PayoutLedgerEntry.id,
        )

        if partner_id:
            stmt = stmt.where(PayoutLedgerEntry.partner_id == partner_id)
        if status:
            stmt = stmt.where(PayoutLedgerEntry.status == get_enum_value(status))
        if ledger_type:
            stmt = stmt.where(PayoutLedgerEntry.ledger_type == get_enum_value(ledger_type))

        return await paginate(self.db, stmt, page, page_size)

    async def verify_snapshot_integrity(self, payout_id: uuid.UUID) -> bool:
        """
        Recompute the fingerprint from the stored ids.

        Corrections carry no snapshot and always verify.
        """
        payout = await self.get_payout(payout_id)
        if payout.is_correction:
            return True

        is_valid = snapshot_fingerprint(payout.conversion_ids) == payout.snapshot_fingerprint
        if not is_valid:
            logger.warning(f"SECURITY: payout {payout_id} stored snapshot does not match its fingerprint")
        return is_valid

    async def get_payout_snapshot(self, payout_id: uuid.UUID) -> dict:
        """The payout, the conversions it was calculated from and whether it verifies."""
        payout = await self.get_payout(payout_id)
        conversions = await PayoutCalculator(self.db).load_conversions(payout.conversion_ids)
        return {
            "payout": payout,
            "conversions": conversions,
            "is_valid": await self.verify_snapshot_integrity(payout_id),
        }
