"""Overage accumulation and settlement rules for annual plans"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from tryon_billing.domain.catalog import MAXIMUM_CHARGE, MINIMUM_CHARGE, USAGE_PRICE_PER_CREDIT
from tryon_billing.domain.models import CreditAccount, ErrorCode

CENT = Decimal("0.01")


def round_amount(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def overage_price(units: int) -> Decimal:
    return USAGE_PRICE_PER_CREDIT * units


def track_overage_changes(account: CreditAccount, units: int = 1) -> Dict[str, Any]:
    """Accumulate units of overage; nothing is charged until settlement"""
    return {
        "overage_count": account.overage_count + units,
        "overage_amount": account.overage_amount + overage_price(units),
    }


def untrack_overage_changes(account: CreditAccount, units: int, amount: Decimal) -> Dict[str, Any]:
    return {
        "overage_count": max(0, account.overage_count - units),
        "overage_amount": max(Decimal("0"), account.overage_amount - amount),
    }


def reset_overage_changes(now: datetime) -> Dict[str, Any]:
    return {
        "overage_count": 0,
        "overage_amount": Decimal("0"),
        "last_overage_billed": now,
    }


@dataclass
class SettlementDecision:
    """What to do with the accumulated amount at a month boundary"""

    charge: bool
    reset: bool
    amount: Decimal
    original_amount: Decimal
    capped: bool = False
    code: Optional[ErrorCode] = None


def decide_settlement(overage_amount: Decimal) -> SettlementDecision:
    """
    Settlement thresholds:
    - 0: nothing to bill, counters reset
    - below 0.50: too small to charge, counters carry to the next period
    - above 10,000: charge the maximum; the excess is forgiven
    - otherwise: charge the amount rounded to the cent
    """
    amount = round_amount(overage_amount)

    if amount == 0:
        return SettlementDecision(
            charge=False, reset=True, amount=amount, original_amount=amount, code=ErrorCode.NOTHING_TO_BILL
        )

    if amount < MINIMUM_CHARGE:
        return SettlementDecision(
            charge=False, reset=False, amount=amount, original_amount=amount, code=ErrorCode.BELOW_MINIMUM
        )

    if amount > MAXIMUM_CHARGE:
        return SettlementDecision(
            charge=True, reset=True, amount=MAXIMUM_CHARGE, original_amount=amount, capped=True
        )

    return SettlementDecision(charge=True, reset=True, amount=amount, original_amount=amount)
