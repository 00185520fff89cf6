"""Unit tests for coupon validation and catalog lookups"""

from datetime import datetime, timezone
from decimal import Decimal

from tryon_billing.domain.catalog import get_credit_package, get_coupon, get_plan, match_plan
from tryon_billing.domain.models import CouponRedemption, CreditAccount, ErrorCode
from tryon_billing.services.coupons import validate_coupon

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)
BEFORE_HOLIDAY = datetime(2024, 12, 1, tzinfo=timezone.utc)


def test_validate_coupon_valid_case_insensitive():
    """Test codes are matched after trimming and upper-casing"""
    validation = validate_coupon(CreditAccount(), "  welcome50 ", NOW)

    assert validation.valid is True
    assert validation.code == "WELCOME50"
    assert validation.credits == 50


def test_validate_coupon_required():
    """Test an empty code is rejected"""
    validation = validate_coupon(CreditAccount(), "", NOW)

    assert validation.valid is False
    assert validation.error == ErrorCode.INVALID_CODE


def test_validate_coupon_unknown_code():
    """Test an unknown code is INVALID_CODE"""
    validation = validate_coupon(CreditAccount(), "NOPE", NOW)

    assert validation.valid is False
    assert validation.error == ErrorCode.INVALID_CODE


def test_validate_coupon_expired():
    """Test HOLIDAY25 is rejected after its expiry"""
    validation = validate_coupon(CreditAccount(), "HOLIDAY25", NOW)

    assert validation.valid is False
    assert validation.error == ErrorCode.EXPIRED_CODE


def test_validate_coupon_per_shop_limit():
    """Test a single-use code cannot be redeemed twice by one shop"""
    account = CreditAccount(coupon_redemptions=[CouponRedemption(code="WELCOME50", credits=50, redeemed_at=NOW)])

    validation = validate_coupon(account, "WELCOME50", NOW)

    assert validation.valid is False
    assert validation.error == ErrorCode.USAGE_LIMIT_EXCEEDED


def test_validate_coupon_multi_use_limit():
    """Test HOLIDAY25 allows three redemptions per shop"""
    redemption = CouponRedemption(code="HOLIDAY25", credits=25, redeemed_at=BEFORE_HOLIDAY)

    two_used = CreditAccount(coupon_redemptions=[redemption] * 2)
    three_used = CreditAccount(coupon_redemptions=[redemption] * 3)

    assert validate_coupon(two_used, "HOLIDAY25", BEFORE_HOLIDAY).valid is True
    assert validate_coupon(three_used, "HOLIDAY25", BEFORE_HOLIDAY).error == ErrorCode.USAGE_LIMIT_EXCEEDED


def test_other_codes_do_not_count_toward_limit():
    """Test redemptions of a different code are ignored"""
    account = CreditAccount(coupon_redemptions=[CouponRedemption(code="WELCOME50", credits=50, redeemed_at=NOW)])

    assert validate_coupon(account, "REFERRAL100", NOW).valid is True


def test_catalog_lookups():
    """Test plan, package and coupon lookups"""
    assert get_plan("pro-monthly").price == Decimal("23.00")
    assert get_plan("pro-annual").is_annual is True
    assert get_plan("unknown") is None
    assert get_plan(None) is None

    assert get_credit_package("MEDIUM").credits == 100
    assert get_credit_package("huge") is None

    assert get_coupon("referral100").credits == 100


def test_match_plan_by_price_interval_currency():
    """Test recurring price matching within a cent"""
    assert [p.handle for p in match_plan(Decimal("23.00"), "EVERY_30_DAYS", "USD")] == ["pro-monthly"]
    assert [p.handle for p in match_plan(Decimal("179.995"), "ANNUAL", "USD")] == ["pro-annual"]
    assert match_plan(Decimal("23.00"), "ANNUAL", "USD") == []
    assert match_plan(Decimal("23.00"), "EVERY_30_DAYS", "EUR") == []
