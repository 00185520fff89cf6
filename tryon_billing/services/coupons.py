"""Coupon validation and redemption"""

import logging
from datetime import datetime
from typing import Optional

from tryon_billing.domain.catalog import get_coupon, normalize_coupon_code
from tryon_billing.domain.exceptions import LedgerStoreError
from tryon_billing.domain.models import (
    CouponRedemption,
    CouponRedemptionResult,
    CouponValidation,
    CreditAccount,
    ErrorCode,
)
from tryon_billing.infrastructure.observability.metrics import record_coupon_redemption
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.utils.date_utils import ensure_utc, utcnow


def validate_coupon(account: CreditAccount, code: Optional[str], now: datetime) -> CouponValidation:
    """
    Checks, in order: exists, active, not expired, per-shop limit.

    Global limits are declared in the catalog but not enforced.
    """
    normalized = normalize_coupon_code(code)
    if not normalized:
        return CouponValidation(valid=False, error=ErrorCode.INVALID_CODE, message="Coupon code is required")

    coupon = get_coupon(normalized)
    if coupon is None:
        return CouponValidation(valid=False, code=normalized, error=ErrorCode.INVALID_CODE, message="Coupon code is invalid")

    if not coupon.active:
        return CouponValidation(
            valid=False, code=normalized, error=ErrorCode.INACTIVE_CODE, message="Coupon code is not active"
        )

    if coupon.expires_at is not None and ensure_utc(now) > coupon.expires_at:
        return CouponValidation(
            valid=False, code=normalized, error=ErrorCode.EXPIRED_CODE, message="Coupon code has expired"
        )

    if coupon.per_shop_limit:
        used = sum(1 for r in account.coupon_redemptions if normalize_coupon_code(r.code) == normalized)
        if used >= coupon.per_shop_limit:
            return CouponValidation(
                valid=False,
                code=normalized,
                error=ErrorCode.USAGE_LIMIT_EXCEEDED,
                message=f"This coupon code can only be used {coupon.per_shop_limit} time(s)",
            )

    return CouponValidation(valid=True, code=normalized, credits=coupon.credits, coupon=coupon)


class CouponService:
    """Redeems promotional codes into coupon credits"""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    async def validate_coupon_code(
        self, installation_id: str, code: Optional[str], now: Optional[datetime] = None
    ) -> CouponValidation:
        account = await self.ledger.read(installation_id)
        return validate_coupon(account, code, now or utcnow())

    async def redeem_coupon_code(
        self, installation_id: str, code: Optional[str], now: Optional[datetime] = None
    ) -> CouponRedemptionResult:
        """Validate and credit a coupon; balances and the redemption log are written together"""
        now = now or utcnow()
        async with self.ledger.locked(installation_id):
            account = await self.ledger.read(installation_id)
            validation = validate_coupon(account, code, now)
            if not validation.valid:
                record_coupon_redemption(False)
                return CouponRedemptionResult(
                    success=False, code=validation.code, error=validation.error, message=validation.message
                )

            changes = {
                "coupon_balance": account.coupon_balance + validation.credits,
                "total_balance": account.total_balance + validation.credits,
                "coupon_redemptions": account.coupon_redemptions
                + [CouponRedemption(code=validation.code, credits=validation.credits, redeemed_at=now)],
            }
            try:
                updated = await self.ledger.write(installation_id, changes, account)
            except LedgerStoreError as e:
                logging.error(
                    f"Coupon redemption failed: {e}",
                    extra={"installation_id": installation_id, "coupon_code": validation.code},
                )
                record_coupon_redemption(False)
                return CouponRedemptionResult(
                    success=False,
                    code=validation.code,
                    error=ErrorCode.REDEMPTION_FAILED,
                    message="Failed to redeem coupon code. Please try again.",
                )

        record_coupon_redemption(True)
        logging.info(
            "Coupon redeemed",
            extra={
                "installation_id": installation_id,
                "coupon_code": validation.code,
                "credits_added": validation.credits,
                "total_balance": updated.total_balance,
            },
        )
        return CouponRedemptionResult(
            success=True,
            code=validation.code,
            credits_added=validation.credits,
            new_balance=updated.total_balance,
            message=f"{validation.credits} credits added successfully",
        )
