"""Pydantic schemas for the payout ledger and audit log reads."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from referral_ledger.schemas.base import BaseCreateSchema, BaseResponseSchema, PaginatedSchema
from referral_ledger.schemas.referral import ConversionResponse


# A bare date widens to the whole UTC day
PeriodBound = Union[date, datetime]


# ============================================================================
# Requests
# ============================================================================

class PayoutCalculateRequest(BaseCreateSchema):
    partner_id: UUID
    period_start: PeriodBound
    period_end: PeriodBound


class PayoutApproveRequest(BaseCreateSchema):
    snapshot_fingerprint: str = Field(..., min_length=1, max_length=64)
    approved_by: EmailStr
    reason: Optional[str] = Field(None, max_length=1000)


class PayoutPaidRequest(BaseCreateSchema):
    payment_method: str = Field(..., min_length=1, max_length=50)
    payment_reference: str = Field(..., min_length=1, max_length=100)


class PayoutAdjustmentCreate(BaseCreateSchema):
    adjustment_amount: Decimal = Field(..., decimal_places=2)
    reason: str = Field(..., min_length=10, max_length=2000)
    approved_by: EmailStr

    @field_validator('adjustment_amount')
    @classmethod
    def validate_non_zero(cls, v):
        if v == 0:
            raise ValueError("Adjustment amount cannot be zero")
        return v


# ============================================================================
# Responses
# ============================================================================

class PayoutResponse(BaseResponseSchema):
    id: UUID
    partner_id: UUID
    period_start: datetime
    period_end: datetime
    status: str
    ledger_type: str
    snapshot_fingerprint: str
    conversion_ids: List[str] = []
    total_conversions: int
    total_revenue: Decimal
    total_commission: Decimal
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    reference_ledger_id: Optional[UUID] = None
    adjustment_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PayoutList(PaginatedSchema):
    items: List[PayoutResponse]


class PayoutCalculationResponse(BaseModel):
    outcome: str
    payout: PayoutResponse
    conversions: List[ConversionResponse] = []


class PayoutSnapshotResponse(BaseModel):
    payout: PayoutResponse
    conversions: List[ConversionResponse] = []
    is_valid: bool


class PayoutIntegrityResponse(BaseModel):
    payout_id: UUID
    is_valid: bool


class PartnerPayoutHistoryResponse(BaseModel):
    partner_id: UUID
    payouts: List[PayoutResponse] = []
    adjustments: List[PayoutResponse] = []
    total_paid: Decimal
    total_adjustments: Decimal
    net_paid: Decimal
    total_settled: Decimal


# ============================================================================
# Audit
# ============================================================================

class AuditLogResponse(BaseResponseSchema):
    id: UUID
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    actor_email: str
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime

    @model_validator(mode='before')
    @classmethod
    def map_metadata_column(cls, data):
        # ORM attribute is metadata_ (declarative reserves "metadata")
        if hasattr(data, "metadata_"):
            return {
                "id": data.id,
                "entity_type": data.entity_type,
                "entity_id": data.entity_id,
                "action": data.action,
                "actor_id": data.actor_id,
                "actor_email": data.actor_email,
                "before_state": data.before_state,
                "after_state": data.after_state,
                "metadata": data.metadata_,
                "created_at": data.created_at,
            }
        return data


class AuditLogList(PaginatedSchema):
    items: List[AuditLogResponse]
