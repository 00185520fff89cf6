"""Static plan, credit package and coupon catalog"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from tryon_billing.domain.models import BillingInterval, Coupon, CreditPackage, Plan

PRO_MONTHLY = "pro-monthly"
PRO_ANNUAL = "pro-annual"

PLANS: Dict[str, Plan] = {
    PRO_MONTHLY: Plan(
        handle=PRO_MONTHLY,
        name="Plan Standard",
        price=Decimal("23.00"),
        currency="USD",
        interval=BillingInterval.MONTHLY,
        trial_days=15,
        included_credits=100,
    ),
    PRO_ANNUAL: Plan(
        handle=PRO_ANNUAL,
        name="Plan Standard",
        price=Decimal("180.00"),  # $15/month equivalent
        currency="USD",
        interval=BillingInterval.ANNUAL,
        trial_days=15,
        included_credits=100,  # granted monthly
    ),
}

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "small": CreditPackage(
        id="small", name="50 Credits", credits=50, price=Decimal("10.00"), currency="USD",
        description="Perfect for testing",
    ),
    "medium": CreditPackage(
        id="medium", name="100 Credits", credits=100, price=Decimal("18.00"), currency="USD",
        description="Best value",
    ),
    "large": CreditPackage(
        id="large", name="200 Credits", credits=200, price=Decimal("32.00"), currency="USD",
        description="For high-volume users",
    ),
}

COUPON_CODES: Dict[str, Coupon] = {
    "WELCOME50": Coupon(
        code="WELCOME50",
        credits=50,
        per_shop_limit=1,
        global_limit=1000,
        expires_at=None,
        active=True,
        description="Welcome bonus - 50 free credits",
    ),
    "REFERRAL100": Coupon(
        code="REFERRAL100",
        credits=100,
        per_shop_limit=1,
        global_limit=None,
        expires_at=None,
        active=True,
        description="Referral bonus - 100 free credits",
    ),
    "HOLIDAY25": Coupon(
        code="HOLIDAY25",
        credits=25,
        per_shop_limit=3,
        global_limit=5000,
        expires_at=datetime(2024, 12, 25, 23, 59, 59, tzinfo=timezone.utc),
        active=True,
        description="Holiday special - 25 credits (3 uses per shop)",
    ),
}

# Overage pricing
USAGE_PRICE_PER_CREDIT = Decimal("0.20")
USAGE_CURRENCY = "USD"
USAGE_CAPPED_AMOUNT = Decimal("50.00")  # per billing period, metered line item
USAGE_TERMS = "$0.20 per try-on after included 100 credits"

# One-time charge limits enforced by the billing API
MINIMUM_CHARGE = Decimal("0.50")
MAXIMUM_CHARGE = Decimal("10000")


def get_plan(handle: str | None) -> Optional[Plan]:
    if not handle:
        return None
    return PLANS.get(handle)


def get_available_plans() -> List[Plan]:
    return list(PLANS.values())


def get_credit_package(package_id: str | None) -> Optional[CreditPackage]:
    if not package_id:
        return None
    return CREDIT_PACKAGES.get(package_id.lower())


def normalize_coupon_code(code: str | None) -> str:
    return (code or "").strip().upper()


def get_coupon(code: str | None) -> Optional[Coupon]:
    return COUPON_CODES.get(normalize_coupon_code(code))


def match_plan(price: Decimal, interval: str, currency: str) -> List[Plan]:
    """All catalog plans matching a billed price (within a cent), interval and currency"""
    return [
        plan
        for plan in PLANS.values()
        if abs(plan.price - price) < Decimal("0.01")
        and plan.interval.value == interval
        and plan.currency == currency
    ]
