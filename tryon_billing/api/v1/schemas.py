"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    """Response for GET /v1/credits/balance"""

    total_balance: int
    balances: Dict[str, int]
    included_per_period: int
    used_this_period: int
    period_end: Optional[datetime] = None
    is_annual: bool
    is_trial: bool
    overage_count: int
    overage_amount: float
    subscription_line_item_id: Optional[str] = None


class DeductRequest(BaseModel):
    """Request body for POST /v1/credits/deduct"""

    operation_id: Optional[str] = Field(None, min_length=1, description="Try-on identifier used for refunds")
    unit_cost: int = Field(1, gt=0, description="Credits consumed by the operation")


class DeductResponse(BaseModel):
    success: bool
    operation_id: str
    source: Optional[str] = None
    credits_remaining: int
    breakdown: Dict[str, int] = {}
    overage_units: int = 0
    overage_amount: float = 0.0
    code: Optional[str] = None
    message: Optional[str] = None
    trial_replacement_needed: bool = False
    trial_credits_used: Optional[int] = None


class RefundRequest(BaseModel):
    """Request body for POST /v1/credits/refund"""

    operation_id: str = Field(..., min_length=1)
    reason: str = Field("generation_failed", min_length=1)
    source: Optional[str] = None


class RefundResponse(BaseModel):
    success: bool
    refunded: bool
    source: Optional[str] = None
    restored: Dict[str, int] = {}
    code: Optional[str] = None
    message: Optional[str] = None


class CouponRequest(BaseModel):
    """Request body for POST /v1/coupons/validate and /v1/coupons/redeem"""

    code: str = Field(..., description="Coupon code, case-insensitive")


class CouponValidationResponse(BaseModel):
    valid: bool
    code: Optional[str] = None
    credits: int = 0
    error: Optional[str] = None
    message: Optional[str] = None


class CouponRedemptionResponse(BaseModel):
    success: bool
    code: Optional[str] = None
    credits_added: int = 0
    new_balance: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None


class CreditPackageSchema(BaseModel):
    id: str
    name: str
    credits: int
    price: float
    currency: str
    description: str = ""


class CreditPackagesResponse(BaseModel):
    """Response for GET /v1/credit-packages"""

    packages: List[CreditPackageSchema]


class PurchaseRequest(BaseModel):
    package_id: str = Field(..., min_length=1)


class PurchaseResponse(BaseModel):
    success: bool
    package_id: str
    confirmation_url: Optional[str] = None
    purchase_id: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class PurchaseConfirmRequest(BaseModel):
    purchase_id: str = Field(..., min_length=1)
    package_id: str = Field(..., min_length=1)


class PurchaseConfirmResponse(BaseModel):
    success: bool
    purchase_id: str
    credits_added: int = 0
    new_balance: Optional[int] = None
    already_processed: bool = False
    error: Optional[str] = None
    message: Optional[str] = None


class TrialStatusResponse(BaseModel):
    """Response for GET /v1/trial/status"""

    is_trial: bool
    state: str
    trial_credits_remaining: int
    trial_credits_used: int
    trial_credits_total: int
    days_remaining: int
    days_since_start: Optional[int] = None
    trial_start_date: Optional[datetime] = None
    notification: Optional[Dict[str, Any]] = None


class ReplacementRequest(BaseModel):
    """Request body for POST /v1/trial/replacement"""

    plan_handle: str = Field(..., min_length=1)
    subscription_id: Optional[str] = None
    return_url: Optional[str] = None


class ReplacementResponse(BaseModel):
    replacement_needed: bool
    confirmation_url: Optional[str] = None
    reason: Optional[str] = None
    subscription_id: Optional[str] = None
    code: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    action: Optional[str] = None
