"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from tryon_billing.domain.exceptions import LedgerInvariantError


class BillingInterval(str, Enum):
    MONTHLY = "EVERY_30_DAYS"
    ANNUAL = "ANNUAL"


class CreditType(str, Enum):
    """Credit buckets in spending order"""

    TRIAL = "trial"
    COUPON = "coupon"
    PLAN = "plan"
    PURCHASED = "purchased"

    @property
    def balance_field(self) -> str:
        return f"{self.value}_balance"


class CreditSource(str, Enum):
    """Where a deduction was taken from"""

    METAFIELD = "metafield"  # ledger balances
    USAGE_RECORD = "usage_record"  # metered billing, monthly plans
    OVERAGE = "overage"  # accumulated overage, annual plans


class ErrorCode(str, Enum):
    INVALID_PLAN = "INVALID_PLAN"
    INVALID_PACKAGE = "INVALID_PACKAGE"
    INVALID_CODE = "INVALID_CODE"
    INACTIVE_CODE = "INACTIVE_CODE"
    EXPIRED_CODE = "EXPIRED_CODE"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    CAPPED_AMOUNT_EXCEEDED = "CAPPED_AMOUNT_EXCEEDED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    TRIAL_REPLACEMENT_NEEDED = "TRIAL_REPLACEMENT_NEEDED"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    NOTHING_TO_BILL = "NOTHING_TO_BILL"
    REDEMPTION_FAILED = "REDEMPTION_FAILED"
    PURCHASE_FAILED = "PURCHASE_FAILED"
    PURCHASE_NOT_ACTIVE = "PURCHASE_NOT_ACTIVE"
    DEDUCTION_NOT_FOUND = "DEDUCTION_NOT_FOUND"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"


class TrialState(str, Enum):
    NOT_STARTED = "not_started"
    IN_TRIAL = "in_trial"
    ENDED = "ended"


class TrialEndReason(str, Enum):
    TIME_ELAPSED = "30 days"
    CREDITS_EXHAUSTED = "credits exhausted"
    REPLACED = "replaced"


BALANCE_FIELDS = tuple(credit_type.balance_field for credit_type in CreditType)


@dataclass(frozen=True)
class Plan:
    """Static subscription plan"""

    handle: str
    name: str
    price: Decimal
    currency: str
    interval: BillingInterval
    trial_days: int
    included_credits: int

    @property
    def is_annual(self) -> bool:
        return self.interval == BillingInterval.ANNUAL


@dataclass(frozen=True)
class CreditPackage:
    """One-time credit pack"""

    id: str
    name: str
    credits: int
    price: Decimal
    currency: str
    description: str = ""


@dataclass(frozen=True)
class Coupon:
    """Promotional code granting credits"""

    code: str
    credits: int
    per_shop_limit: Optional[int]
    global_limit: Optional[int]  # declared, not enforced
    expires_at: Optional[datetime]
    active: bool
    description: str = ""


@dataclass
class CouponRedemption:
    code: str
    credits: int
    redeemed_at: datetime


@dataclass
class CreditAccount:
    """Credit ledger for one installation"""

    total_balance: int = 0
    trial_balance: int = 0
    trial_used: int = 0
    plan_balance: int = 0
    purchased_balance: int = 0
    coupon_balance: int = 0
    included_per_period: int = 100
    used_this_period: int = 0
    last_credit_reset: Optional[datetime] = None
    period_end: Optional[datetime] = None
    monthly_period_end: Optional[datetime] = None
    subscription_line_item_id: Optional[str] = None
    subscription_id: Optional[str] = None
    is_trial_period: bool = False
    trial_start_date: Optional[datetime] = None
    overage_count: int = 0
    overage_amount: Decimal = Decimal("0")
    last_overage_billed: Optional[datetime] = None
    coupon_redemptions: List[CouponRedemption] = field(default_factory=list)
    notifications_sent: List[int] = field(default_factory=list)

    @property
    def is_annual(self) -> bool:
        return self.monthly_period_end is not None

    @property
    def is_initialized(self) -> bool:
        return self.trial_start_date is not None or self.subscription_id is not None

    def credit_sum(self) -> int:
        return sum(getattr(self, name) for name in BALANCE_FIELDS)

    def balance_of(self, credit_type: CreditType) -> int:
        return getattr(self, credit_type.balance_field)

    def with_updates(self, changes: Dict[str, Any]) -> "CreditAccount":
        """Apply a partial update, enforcing the balance partition"""
        updated = replace(self, **changes)
        negative = [name for name in BALANCE_FIELDS + ("total_balance",) if getattr(updated, name) < 0]
        if negative:
            raise LedgerInvariantError(f"Negative balance for {', '.join(negative)}")
        if updated.total_balance != updated.credit_sum():
            raise LedgerInvariantError(
                f"total_balance {updated.total_balance} != sum of credit types {updated.credit_sum()}"
            )
        return updated


@dataclass
class DeductionResult:
    """Outcome of deducting one unit of use"""

    success: bool
    operation_id: str
    source: Optional[CreditSource] = None
    credits_remaining: int = 0
    breakdown: Dict[str, int] = field(default_factory=dict)
    overage_units: int = 0
    overage_amount: Decimal = Decimal("0")
    code: Optional[ErrorCode] = None
    message: Optional[str] = None
    trial_credits_used: Optional[int] = None
    notification_threshold: Optional[int] = None  # trial alert to deliver, already marked sent

    @property
    def trial_replacement_needed(self) -> bool:
        return self.code == ErrorCode.TRIAL_REPLACEMENT_NEEDED


@dataclass
class RefundResult:
    success: bool
    refunded: bool
    source: Optional[CreditSource] = None
    restored: Dict[str, int] = field(default_factory=dict)
    code: Optional[ErrorCode] = None
    message: Optional[str] = None


@dataclass
class TrialCheck:
    should_end: bool
    reason: str
    days_since_start: Optional[int] = None
    trial_credits_used: int = 0


@dataclass
class TrialPhase:
    """Single resolved view of the trial state machine"""

    state: TrialState
    started_at: Optional[datetime] = None
    used: int = 0
    reason: Optional[TrialEndReason] = None


@dataclass
class TrialStatus:
    is_trial: bool
    state: TrialState
    trial_credits_remaining: int
    trial_credits_used: int
    trial_credits_total: int
    days_remaining: int
    days_since_start: Optional[int] = None
    trial_start_date: Optional[datetime] = None
    notification: Optional[Dict[str, Any]] = None


@dataclass
class BalanceSummary:
    total_balance: int
    balances: Dict[str, int]
    included_per_period: int
    used_this_period: int
    period_end: Optional[datetime]
    is_annual: bool
    is_trial: bool
    overage_count: int
    overage_amount: Decimal
    subscription_line_item_id: Optional[str] = None


@dataclass
class Availability:
    available: bool
    remaining: int
    source: str  # "metafield" | "usage_record" | "overage" | "none"
    capped_amount: Optional[Decimal] = None


@dataclass
class OverageSettlement:
    """Outcome of settling accumulated annual-plan overage"""

    billed: bool
    amount: Decimal
    overage_count: int
    code: Optional[ErrorCode] = None
    original_amount: Optional[Decimal] = None
    capped: bool = False
    purchase_id: Optional[str] = None
    confirmation_url: Optional[str] = None


@dataclass
class PeriodCheck:
    is_new_period: bool
    stored_period_end: Optional[datetime]
    new_period_end: datetime


@dataclass
class RenewalOutcome:
    renewed: bool
    credits_added: int = 0
    period_end: Optional[datetime] = None
    overage: Optional[OverageSettlement] = None


@dataclass
class ReplacementOutcome:
    replacement_needed: bool
    confirmation_url: Optional[str] = None
    reason: Optional[str] = None
    subscription_id: Optional[str] = None
    code: Optional[ErrorCode] = None


@dataclass
class CouponValidation:
    valid: bool
    code: Optional[str] = None
    credits: int = 0
    error: Optional[ErrorCode] = None
    message: Optional[str] = None
    coupon: Optional[Coupon] = None


@dataclass
class CouponRedemptionResult:
    success: bool
    code: Optional[str] = None
    credits_added: int = 0
    new_balance: Optional[int] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None


@dataclass
class PurchaseOffer:
    success: bool
    package_id: str
    confirmation_url: Optional[str] = None
    purchase_id: Optional[str] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None


@dataclass
class PurchaseResult:
    success: bool
    purchase_id: str
    credits_added: int = 0
    new_balance: Optional[int] = None
    already_processed: bool = False
    error: Optional[ErrorCode] = None
    message: Optional[str] = None


@dataclass
class SubscriptionUpdateOutcome:
    subscription_id: Optional[str]
    status: Optional[str]
    plan_handle: Optional[str]
    action: str  # "ignored" | "initialized" | "activated" | "renewed" | "synced"
    renewal: Optional[RenewalOutcome] = None


# External service payloads


@dataclass
class StoreEntry:
    """Typed key/value in the ledger store"""

    key: str
    type: str
    value: str


@dataclass
class BatchSetResult:
    success: bool
    errors: List[str] = field(default_factory=list)
    written_keys: List[str] = field(default_factory=list)


@dataclass
class LineItem:
    id: str
    is_usage: bool
    interval: Optional[str] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    capped_amount: Optional[Decimal] = None
    balance_used: Optional[Decimal] = None


@dataclass
class ActiveSubscription:
    id: str
    status: str
    current_period_end: Optional[datetime]
    line_items: List[LineItem] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def usage_line_item(self) -> Optional[LineItem]:
        return next((item for item in self.line_items if item.is_usage), None)


@dataclass
class SubscriptionOffer:
    confirmation_url: str
    subscription_id: Optional[str]
    status: Optional[str] = None


@dataclass
class OneTimeCharge:
    purchase_id: str
    amount: Decimal
    confirmation_url: Optional[str] = None
    status: Optional[str] = None


@dataclass
class UsageRecord:
    id: Optional[str]
    amount: Decimal
    idempotency_key: str


@dataclass
class ShopContact:
    domain: str
    email: Optional[str]
    name: Optional[str]
