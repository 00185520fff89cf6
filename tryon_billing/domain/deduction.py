"""Credit spending and refund rules"""

import hashlib
from typing import Any, Dict, Optional

from tryon_billing.domain.models import CreditAccount, CreditType

# Spending order; trial credits always go first
SPENDING_ORDER = (CreditType.TRIAL, CreditType.COUPON, CreditType.PLAN, CreditType.PURCHASED)


def allocate_credits(account: CreditAccount, unit_cost: int = 1) -> Optional[Dict[CreditType, int]]:
    """
    Split unit_cost across credit types in spending order.

    Returns None when the ledger cannot cover the whole cost; the caller then
    falls back to overage billing for the full amount.
    """
    if unit_cost <= 0:
        raise ValueError("unit_cost must be positive")
    if account.total_balance < unit_cost:
        return None

    allocation: Dict[CreditType, int] = {}
    remaining = unit_cost
    for credit_type in SPENDING_ORDER:
        if remaining == 0:
            break
        take = min(account.balance_of(credit_type), remaining)
        if take > 0:
            allocation[credit_type] = take
            remaining -= take

    return allocation


def deduction_changes(account: CreditAccount, allocation: Dict[CreditType, int]) -> Dict[str, Any]:
    """Partial update for spending an allocation; written as one batch"""
    spent = sum(allocation.values())
    changes: Dict[str, Any] = {
        credit_type.balance_field: account.balance_of(credit_type) - amount
        for credit_type, amount in allocation.items()
    }
    changes["total_balance"] = account.total_balance - spent
    changes["used_this_period"] = account.used_this_period + spent

    if CreditType.TRIAL in allocation:
        changes["trial_used"] = account.trial_used + allocation[CreditType.TRIAL]

    return changes


def refund_changes(account: CreditAccount, breakdown: Dict[str, int]) -> Dict[str, Any]:
    """Reverse the per-type amounts recorded for a deduction, trial_used included"""
    changes: Dict[str, Any] = {}
    restored = 0
    for type_name, amount in breakdown.items():
        credit_type = CreditType(type_name)
        changes[credit_type.balance_field] = account.balance_of(credit_type) + amount
        restored += amount

    changes["total_balance"] = account.total_balance + restored
    changes["used_this_period"] = max(0, account.used_this_period - restored)

    if CreditType.TRIAL.value in breakdown:
        changes["trial_used"] = max(0, account.trial_used - breakdown[CreditType.TRIAL.value])

    return changes


def generate_idempotency_key(installation_id: str, operation_id: str) -> str:
    """Stable key so a retried usage record for the same operation is not charged twice"""
    return hashlib.sha256(f"{installation_id}:{operation_id}".encode()).hexdigest()
