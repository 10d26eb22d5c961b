# Services module
from referral_ledger.services.audit_service import AuditService, Actor, SYSTEM_ACTOR
from referral_ledger.services.notification_service import (
    NotificationPublisher,
    LoggingNotificationPublisher,
    RedisNotificationPublisher,
)
from referral_ledger.services.partner_service import PartnerService
from referral_ledger.services.link_service import LinkService

# Attribution & ledger
from referral_ledger.services.attribution_service import AttributionService
from referral_ledger.services.conversion_ledger_service import ConversionLedgerService

# Payouts
from referral_ledger.services.payout_calculator import PayoutCalculator, PayoutCalculation, CalculationOutcome
from referral_ledger.services.payout_state_machine import PayoutStateMachine
from referral_ledger.services.adjustment_service import AdjustmentService
from referral_ledger.services.payout_query_service import PayoutQueryService

__all__ = [
    "AuditService",
    "Actor",
    "SYSTEM_ACTOR",
    "NotificationPublisher",
    "LoggingNotificationPublisher",
    "RedisNotificationPublisher",
    "PartnerService",
    "LinkService",
    # Attribution & ledger
    "AttributionService",
    "ConversionLedgerService",
    # Payouts
    "PayoutCalculator",
    "PayoutCalculation",
    "CalculationOutcome",
    "PayoutStateMachine",
    "AdjustmentService",
    "PayoutQueryService",
]
