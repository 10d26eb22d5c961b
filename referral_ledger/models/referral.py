"""Referral models: partner organizations, cafes, tracked links and conversions.

A partner owns cafes; each cafe carries the commission rate applied to its
conversions and publishes any number of short links. A conversion ties one
user to the first link they arrived through (first-touch) and snapshots the
rate in force at attribution time.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    String, DateTime, ForeignKey, Integer, Numeric, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from referral_ledger.core.clock import as_utc, utcnow
from referral_ledger.core.enum_utils import enum_comment
from referral_ledger.database import Base
from referral_ledger.db_types import JSONType, UUIDType


# ==================== ENUMS (stored as VARCHAR) ====================

class PartnerStatus(str, Enum):
    """Partner organization status."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class CafeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class LinkStatus(str, Enum):
    """Referral link status. EXPIRED is also derived from expires_at."""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class ApiKeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


# ==================== MODELS ====================

class ReferralPartner(Base):
    """
    Partner organization that earns commission on referred subscriptions.

    Partners are never physically deleted; deactivate via status.
    """
    __tablename__ = "referral_partners"
    __table_args__ = (
        Index('ix_referral_partners_status', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    org_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    org_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Korean business registration number, NNN-NN-NNNNN
    business_number: Mapped[str] = mapped_column(
        String(12),
        unique=True,
        nullable=False,
        comment="Business registration number (NNN-NN-NNNNN)"
    )

    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default="ACTIVE",
        nullable=False,
        comment=enum_comment(PartnerStatus)
    )

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

    cafes: Mapped[List["ReferralCafe"]] = relationship(
        "ReferralCafe",
        back_populates="partner",
        order_by="ReferralCafe.created_at"
    )

    def __repr__(self) -> str:
        return f"<ReferralPartner(business_number='{self.business_number}', org='{self.org_name}')>"


class ReferralCafe(Base):
    """Community (cafe) run by a partner. Owns the commission rate."""
    __tablename__ = "referral_cafes"
    __table_args__ = (
        CheckConstraint(
            'commission_rate >= 0 AND commission_rate <= 1',
            name='ck_referral_cafes_commission_rate'
        ),
        Index('ix_referral_cafes_partner_status', 'partner_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("referral_partners.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    cafe_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # 0.1500 = 15%
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4),
        nullable=False,
        comment="Commission rate as a fraction in [0, 1]"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default="ACTIVE",
        nullable=False,
        comment=enum_comment(CafeStatus)
    )

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

    partner: Mapped["ReferralPartner"] = relationship("ReferralPartner", back_populates="cafes")
    links: Mapped[List["ReferralLink"]] = relationship("ReferralLink", back_populates="cafe")

    def __repr__(self) -> str:
        return f"<ReferralCafe(name='{self.cafe_name}', rate={self.commission_rate})>"


class PartnerApiKey(Base):
    """
    API key issued to a partner for its own integrations.

    Only the sha256 of the key is stored; the raw key is shown once at
    issue time. Revoked keys are kept for the audit trail.
    """
    __tablename__ = "partner_api_keys"
    __table_args__ = (
        Index('ix_partner_api_keys_partner_status', 'partner_id', 'status'),
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

    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    key_prefix: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        comment="First characters of the raw key, for identification"
    )
    key_type: Mapped[str] = mapped_column(String(20), default="partner", nullable=False)

    permissions: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    rate_limit: Mapped[int] = mapped_column(
        Integer,
        default=100,
        nullable=False,
        comment="Requests per minute"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default="ACTIVE",
        nullable=False,
        comment=enum_comment(ApiKeyStatus)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    partner: Mapped["ReferralPartner"] = relationship("ReferralPartner")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) < (now or utcnow())

    def __repr__(self) -> str:
        return f"<PartnerApiKey(prefix='{self.key_prefix}', status='{self.status}')>"


class ReferralLink(Base):
    """Trackable short link published by a cafe."""
    __tablename__ = "referral_links"
    __table_args__ = (
        Index('ix_referral_links_cafe_status', 'cafe_id', 'status'),
        Index('ix_referral_links_expires_at', 'expires_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    cafe_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("referral_cafes.id", ondelete="RESTRICT"),
        nullable=False
    )

    short_code: Mapped[str] = mapped_column(
        String(16),
        unique=True,
        nullable=False,
        index=True
    )
    full_url: Mapped[str] = mapped_column(String(500), nullable=False)

    # UTM
    utm_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Only ever incremented in SQL (clicks = clicks + 1)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default="ACTIVE",
        nullable=False,
        comment=enum_comment(LinkStatus)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

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

    cafe: Mapped["ReferralCafe"] = relationship("ReferralCafe", back_populates="links")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) < (now or utcnow())

    @property
    def effective_status(self) -> str:
        """Stored status, except an ACTIVE link past expires_at reads as EXPIRED."""
        if self.status == LinkStatus.ACTIVE.value and self.is_expired():
            return LinkStatus.EXPIRED.value
        return self.status

    def __repr__(self) -> str:
        return f"<ReferralLink(code='{self.short_code}', status='{self.status}')>"


class ReferralConversion(Base):
    """
    First-touch attribution of a user to a referral link.

    One row per user for the lifetime of the system. Rows are never
    updated; corrections go through payout adjustments.
    """
    __tablename__ = "referral_conversions"
    __table_args__ = (
        Index('ix_referral_conversions_link_attributed', 'link_id', 'attributed_at'),
        Index('ix_referral_conversions_client', 'ip_hash', 'user_agent_hash'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    user_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        comment="First-touch: one conversion per user"
    )

    link_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("referral_links.id", ondelete="RESTRICT"),
        nullable=False
    )

    # sha256 hex, raw values are never stored
    ip_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    attributed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    # Subscription
    subscription_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    plan_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Captured from the cafe at attribution time
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    link: Mapped["ReferralLink"] = relationship("ReferralLink")

    def __repr__(self) -> str:
        return f"<ReferralConversion(user='{self.user_id}', commission={self.commission_amount})>"
