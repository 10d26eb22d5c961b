from fastapi import APIRouter

from referral_ledger.api.v1.endpoints import (
    # Partners & cafes
    partners,
    # Links & attribution
    links,
    conversions,
    # Payout ledger
    payouts,
    # Audit
    audit_logs,
)


api_router = APIRouter(prefix="/api/v1")

# ==================== Partners & Cafes ====================
api_router.include_router(
    partners.router,
    tags=["Referral Partners"]
)

# ==================== Referral Links ====================
api_router.include_router(
    links.router,
    prefix="/links",
    tags=["Referral Links"]
)

# ==================== Conversions ====================
api_router.include_router(
    conversions.router,
    prefix="/conversions",
    tags=["Conversions"]
)

# ==================== Payouts ====================
api_router.include_router(
    payouts.router,
    prefix="/payouts",
    tags=["Payouts"]
)

# ==================== Audit Logs ====================
api_router.include_router(
    audit_logs.router,
    prefix="/audit-logs",
    tags=["Audit Logs"]
)
