"""Importing this package registers every table with Base.metadata."""
from referral_ledger.models.referral import (
    PartnerStatus,
    CafeStatus,
    LinkStatus,
    ApiKeyStatus,
    ReferralPartner,
    ReferralCafe,
    ReferralLink,
    ReferralConversion,
    PartnerApiKey,
)
from referral_ledger.models.payout_ledger import PayoutStatus, LedgerType, PayoutLedgerEntry
from referral_ledger.models.audit_log import AuditLog

__all__ = [
    "PartnerStatus",
    "CafeStatus",
    "LinkStatus",
    "ApiKeyStatus",
    "ReferralPartner",
    "ReferralCafe",
    "ReferralLink",
    "ReferralConversion",
    "PartnerApiKey",
    "PayoutStatus",
    "LedgerType",
    "PayoutLedgerEntry",
    "AuditLog",
]
