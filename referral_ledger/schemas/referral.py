"""
Pydantic schemas for referral partners, cafes, links and conversions.

This module defines request/response schemas for:
- Partner & cafe administration
- Short link creation, resolution and click tracking
- First-touch attribution and fallback lookup
- Link statistics and conversion trends
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from referral_ledger.core.enum_utils import (
    VALID_CAFE_STATUSES,
    VALID_PARTNER_STATUSES,
    normalize_to_uppercase,
)
from referral_ledger.models.referral import CafeStatus, PartnerStatus
from referral_ledger.schemas.base import (
    BaseCreateSchema,
    BaseResponseSchema,
    BaseUpdateSchema,
    PaginatedSchema,
)


BUSINESS_NUMBER_PATTERN = r"^\d{3}-\d{2}-\d{5}$"


class TrendGranularity(str, Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


# ============================================================================
# Client / subscription metadata
# ============================================================================

class ClientMeta(BaseModel):
    """Raw client signals. Hashed before anything is persisted."""
    ip_address: str = Field(..., min_length=1, max_length=100)
    user_agent: str = Field(..., min_length=1, max_length=1000)
    referer: Optional[str] = Field(None, max_length=1000)


class SubscriptionMeta(BaseModel):
    subscription_id: Optional[str] = Field(None, max_length=100)
    plan_type: Optional[str] = Field(None, max_length=50)


# ============================================================================
# Partner Schemas
# ============================================================================

class ReferralPartnerCreate(BaseCreateSchema):
    org_id: str = Field(..., min_length=1, max_length=100)
    org_name: str = Field(..., min_length=1, max_length=200)
    business_number: str = Field(
        ...,
        pattern=BUSINESS_NUMBER_PATTERN,
        description="Business registration number (xxx-xx-xxxxx)"
    )
    contact_email: EmailStr
    contact_name: str = Field(..., min_length=1, max_length=100)


class ReferralPartnerUpdate(BaseUpdateSchema):
    org_name: Optional[str] = Field(None, min_length=1, max_length=200)
    contact_email: Optional[EmailStr] = None
    contact_name: Optional[str] = Field(None, min_length=1, max_length=100)
    status: Optional[PartnerStatus] = None

    @field_validator('status', mode='before')
    @classmethod
    def normalize_status(cls, v):
        return normalize_to_uppercase(v, VALID_PARTNER_STATUSES)


class ReferralPartnerResponse(BaseResponseSchema):
    id: UUID
    org_id: str
    org_name: str
    business_number: str
    contact_email: str
    contact_name: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime


class ReferralPartnerList(PaginatedSchema):
    items: List[ReferralPartnerResponse]


class PartnerStatsResponse(BaseModel):
    partner_id: UUID
    active_cafes: int
    active_links: int
    total_conversions: int
    total_commission: Decimal


# ============================================================================
# Cafe Schemas
# ============================================================================

class ReferralCafeCreate(BaseCreateSchema):
    partner_id: UUID
    cafe_name: str = Field(..., min_length=1, max_length=200)
    commission_rate: Decimal = Field(..., ge=0, le=1, decimal_places=4)


class ReferralCafeUpdate(BaseUpdateSchema):
    cafe_name: Optional[str] = Field(None, min_length=1, max_length=200)
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=1, decimal_places=4)
    status: Optional[CafeStatus] = None

    @field_validator('status', mode='before')
    @classmethod
    def normalize_status(cls, v):
        return normalize_to_uppercase(v, VALID_CAFE_STATUSES)


class ReferralCafeResponse(BaseResponseSchema):
    id: UUID
    partner_id: UUID
    cafe_name: str
    commission_rate: Decimal
    status: str
    created_at: datetime
    updated_at: datetime


class ReferralCafeList(PaginatedSchema):
    items: List[ReferralCafeResponse]


# ============================================================================
# Partner API Key Schemas
# ============================================================================

class ApiKeyPermission(str, Enum):
    READ_CAFES = "read:cafes"
    READ_LINKS = "read:links"
    READ_PAYOUTS = "read:payouts"
    WRITE_POSTS = "write:posts"


class PartnerApiKeyCreate(BaseCreateSchema):
    permissions: List[ApiKeyPermission] = Field(..., min_length=1)
    rate_limit: int = Field(100, ge=10, le=10000, description="Requests per minute")
    expires_in_days: int = Field(365, ge=1, le=365)


class PartnerApiKeyResponse(BaseResponseSchema):
    """Key metadata. The hash and raw key are never returned here."""
    id: UUID
    partner_id: UUID
    key_prefix: str
    key_type: str
    permissions: List[str]
    rate_limit: int
    status: str
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime


class PartnerApiKeyIssued(BaseModel):
    """Returned once, at issue time."""
    api_key: str
    key: PartnerApiKeyResponse
    warning: str = "Store this API key securely. It will not be shown again."


class ApiKeyVerifyRequest(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=200)


class ApiKeyVerification(BaseModel):
    valid: bool
    reason: Optional[str] = None
    key_id: Optional[UUID] = None
    partner_id: Optional[UUID] = None
    permissions: List[str] = []
    rate_limit: Optional[int] = None


# ============================================================================
# Link Schemas
# ============================================================================

class ReferralLinkCreate(BaseCreateSchema):
    cafe_id: UUID
    utm_source: Optional[str] = Field(None, max_length=100)
    utm_medium: Optional[str] = Field(None, max_length=100)
    utm_campaign: Optional[str] = Field(None, max_length=100)
    expires_in_days: Optional[int] = Field(
        None, ge=1, le=365,
        description="Defaults to DEFAULT_LINK_TTL_DAYS"
    )


class ReferralLinkResponse(BaseResponseSchema):
    id: UUID
    cafe_id: UUID
    short_code: str
    full_url: str
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    clicks: int
    status: str
    effective_status: str
    expires_at: datetime
    created_at: datetime


class ReferralLinkList(PaginatedSchema):
    items: List[ReferralLinkResponse]


class ClickResult(BaseModel):
    """Outcome of a tracked click on a short link."""
    link_id: UUID
    short_code: str
    redirect_url: str
    clicks: int
    ip_hash: str
    user_agent_hash: str


# ============================================================================
# Conversion Schemas
# ============================================================================

class ConversionCreate(BaseCreateSchema):
    user_id: str = Field(..., min_length=1, max_length=100)
    link_id: UUID
    client: ClientMeta
    subscription: SubscriptionMeta = Field(default_factory=SubscriptionMeta)
    amount: Decimal = Field(..., ge=0, decimal_places=2)


class ConversionResponse(BaseResponseSchema):
    id: UUID
    user_id: str
    link_id: UUID
    ip_hash: str
    user_agent_hash: str
    attributed_at: datetime
    subscription_id: Optional[str] = None
    plan_type: Optional[str] = None
    amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal


class FallbackAttributionRequest(BaseModel):
    client: ClientMeta
    within_days: Optional[int] = Field(None, ge=1, le=90)


# ============================================================================
# Statistics
# ============================================================================

class LinkStatsResponse(BaseModel):
    link_id: UUID
    short_code: str
    clicks: int
    conversions: int
    conversion_rate: float
    total_revenue: Decimal
    total_commission: Decimal
    recent_conversions: List[ConversionResponse] = []


class TrendBucket(BaseModel):
    conversions: int = 0
    revenue: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")


class ConversionTrendsResponse(BaseModel):
    granularity: TrendGranularity
    buckets: Dict[str, TrendBucket]
