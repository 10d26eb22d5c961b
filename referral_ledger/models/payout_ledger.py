"""Payout ledger: commission obligations per partner and period.

PAYOUT rows carry a snapshot of the conversions they were calculated from
(sorted ids + sha256 fingerprint). ADJUSTMENT and CLAWBACK rows are appended
against a PAID payout and never touch its snapshot.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, Text, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from referral_ledger.core.enum_utils import enum_comment
from referral_ledger.database import Base
from referral_ledger.db_types import JSONType, UUIDType


class PayoutStatus(str, Enum):
    """Payout lifecycle: DRAFT → APPROVED → PROCESSING → PAID (→ ADJUSTED)."""
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    ADJUSTED = "ADJUSTED"


class LedgerType(str, Enum):
    PAYOUT = "PAYOUT"
    ADJUSTMENT = "ADJUSTMENT"   # positive correction
    CLAWBACK = "CLAWBACK"       # negative correction


class PayoutLedgerEntry(Base):
    """
    One row of the append-only payout ledger.

    Only one PAYOUT row may exist per (partner, period_start, period_end);
    corrections are separate rows pointing at the original through
    reference_ledger_id.
    """
    __tablename__ = "payout_ledger"
    __table_args__ = (
        Index(
            'uq_payout_ledger_partner_period',
            'partner_id', 'period_start', 'period_end',
            unique=True,
            postgresql_where=text("ledger_type = 'PAYOUT'"),
            sqlite_where=text("ledger_type = 'PAYOUT'"),
        ),
        Index('ix_payout_ledger_partner_status', 'partner_id', 'status'),
        Index('ix_payout_ledger_reference', 'reference_ledger_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("referral_partners.id", ondelete="RESTRICT"),
        nullable=False
    )

    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default="DRAFT",
        nullable=False,
        comment=enum_comment(PayoutStatus)
    )
    ledger_type: Mapped[str] = mapped_column(
        String(20),
        default="PAYOUT",
        nullable=False,
        comment=enum_comment(LedgerType)
    )

    # Snapshot (empty for corrections)
    snapshot_fingerprint: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    conversion_ids: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Totals
    total_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    total_commission: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=Decimal("0"), nullable=False)

    # Approval
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payment
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Corrections only
    reference_ledger_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("payout_ledger.id", ondelete="RESTRICT"),
        nullable=True
    )
    adjustment_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def is_correction(self) -> bool:
        return self.ledger_type != LedgerType.PAYOUT.value

    def __repr__(self) -> str:
        return (
            f"<PayoutLedgerEntry(type='{self.ledger_type}', status='{self.status}', "
            f"commission={self.total_commission})>"
        )
