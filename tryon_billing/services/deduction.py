"""Deduction engine: spend credits, fall back to metered billing or overage tracking, refund"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from tryon_billing.domain.catalog import USAGE_PRICE_PER_CREDIT
from tryon_billing.domain.deduction import (
    allocate_credits,
    deduction_changes,
    generate_idempotency_key,
    refund_changes,
)
from tryon_billing.domain.exceptions import CappedAmountExceededError
from tryon_billing.domain.models import (
    Availability,
    BalanceSummary,
    CreditAccount,
    CreditSource,
    CreditType,
    DeductionResult,
    ErrorCode,
    RefundResult,
)
from tryon_billing.domain.overage import overage_price, track_overage_changes, untrack_overage_changes
from tryon_billing.domain.trial import is_in_trial, should_end_trial
from tryon_billing.infrastructure.clients.billing import BillingClient
from tryon_billing.infrastructure.database.repositories import DeductionRepository
from tryon_billing.infrastructure.observability.logging import log_deduction
from tryon_billing.infrastructure.observability.metrics import record_deduction, record_refund
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.services.notifications import threshold_changes
from tryon_billing.utils.date_utils import utcnow

USAGE_DESCRIPTION = "Try-on generation - Overage credit"


class DeductionService:
    """Takes one try-on's worth of credits from an installation"""

    def __init__(self, ledger: CreditLedger, billing: BillingClient, db: Session):
        self.ledger = ledger
        self.billing = billing
        self.db = db
        self.deductions = DeductionRepository(db)

    async def deduct(
        self,
        installation_id: str,
        unit_cost: int = 1,
        operation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeductionResult:
        """
        Deduct unit_cost credits for one operation.

        Priority:
        1. Ledger credits in spending order (trial, coupon, plan, purchased)
        2. Annual plans: accumulate overage, billed at the next monthly rollover
        3. Monthly plans: metered usage record on the subscription line item

        A repeated operation_id returns the recorded outcome without deducting again.
        The deduction record is committed before the installation lock is released,
        so the next holder of the lock sees it from any session.

        Raises:
            LedgerStoreError: Ledger unreadable or write rejected
            BillingAPIError: Usage record failed for a reason other than the capped amount
        """
        now = now or utcnow()
        operation_id = operation_id or str(uuid.uuid4())

        async with self.ledger.locked(installation_id):
            existing = self.deductions.get_deduction(installation_id, operation_id)
            account = await self.ledger.read(installation_id)

            if existing is not None:
                return DeductionResult(
                    success=True,
                    operation_id=operation_id,
                    source=CreditSource(existing.source),
                    credits_remaining=account.total_balance,
                    breakdown=dict(existing.breakdown or {}),
                    overage_units=existing.overage_units,
                    overage_amount=Decimal(existing.overage_amount or 0),
                )

            allocation = allocate_credits(account, unit_cost)
            if allocation is not None:
                result = await self._spend_credits(installation_id, operation_id, account, allocation, now)
            elif account.is_annual:
                result = await self._track_overage(installation_id, operation_id, account, unit_cost)
            else:
                result = await self._record_usage(installation_id, operation_id, account, unit_cost)
            self.db.commit()

        record_deduction(result.source.value if result.source else None, result.success)
        log_deduction(
            installation_id,
            operation_id,
            result.source.value if result.source else None,
            result.success,
            result.credits_remaining,
            result.breakdown,
            result.code.value if result.code else None,
        )
        return result

    async def _spend_credits(
        self,
        installation_id: str,
        operation_id: str,
        account: CreditAccount,
        allocation: Dict[CreditType, int],
        now: datetime,
    ) -> DeductionResult:
        """Spend ledger credits; a trial credit is spent even when it ends the trial"""
        changes = deduction_changes(account, allocation)
        code = None
        message = None
        threshold = None

        if CreditType.TRIAL in allocation:
            preview = account.with_updates(changes)
            threshold, marked = threshold_changes(preview)
            changes.update(marked)

            check = should_end_trial(preview, now)
            if check.should_end:
                code = ErrorCode.TRIAL_REPLACEMENT_NEEDED
                message = f"Trial ended ({check.reason}); subscription replacement needed"

        updated = await self.ledger.write(installation_id, changes, account)
        breakdown = {credit_type.value: amount for credit_type, amount in allocation.items()}
        self.deductions.create_deduction(
            installation_id=installation_id,
            operation_id=operation_id,
            source=CreditSource.METAFIELD.value,
            breakdown=breakdown,
        )

        return DeductionResult(
            success=True,
            operation_id=operation_id,
            source=CreditSource.METAFIELD,
            credits_remaining=updated.total_balance,
            breakdown=breakdown,
            code=code,
            message=message,
            trial_credits_used=updated.trial_used if CreditType.TRIAL in allocation else None,
            notification_threshold=threshold,
        )

    async def _track_overage(
        self, installation_id: str, operation_id: str, account: CreditAccount, unit_cost: int
    ) -> DeductionResult:
        amount = overage_price(unit_cost)
        updated = await self.ledger.write(installation_id, track_overage_changes(account, unit_cost), account)
        self.deductions.create_deduction(
            installation_id=installation_id,
            operation_id=operation_id,
            source=CreditSource.OVERAGE.value,
            breakdown={},
            overage_units=unit_cost,
            overage_amount=amount,
        )

        logging.info(
            "Overage tracked",
            extra={
                "installation_id": installation_id,
                "operation_id": operation_id,
                "overage_count": updated.overage_count,
                "overage_amount": str(updated.overage_amount),
            },
        )
        return DeductionResult(
            success=True,
            operation_id=operation_id,
            source=CreditSource.OVERAGE,
            credits_remaining=0,
            overage_units=unit_cost,
            overage_amount=amount,
        )

    async def _record_usage(
        self, installation_id: str, operation_id: str, account: CreditAccount, unit_cost: int
    ) -> DeductionResult:
        if not account.subscription_line_item_id:
            return DeductionResult(
                success=False,
                operation_id=operation_id,
                code=ErrorCode.INSUFFICIENT_CREDITS,
                message="No credits remaining and no usage billing line item on the subscription",
            )

        amount = overage_price(unit_cost)
        try:
            record = await self.billing.create_usage_record(
                line_item_id=account.subscription_line_item_id,
                description=USAGE_DESCRIPTION,
                amount=amount,
                idempotency_key=generate_idempotency_key(installation_id, operation_id),
            )
        except CappedAmountExceededError as e:
            logging.warning(
                f"Capped amount exceeded: {e}",
                extra={"installation_id": installation_id, "operation_id": operation_id},
            )
            return DeductionResult(
                success=False,
                operation_id=operation_id,
                source=CreditSource.USAGE_RECORD,
                code=ErrorCode.CAPPED_AMOUNT_EXCEEDED,
                message="Credit limit exceeded. Increase the capped amount or wait for the next billing period.",
            )

        self.deductions.create_deduction(
            installation_id=installation_id,
            operation_id=operation_id,
            source=CreditSource.USAGE_RECORD.value,
            breakdown={},
            overage_units=unit_cost,
            overage_amount=amount,
            usage_record_id=record.id,
        )
        return DeductionResult(
            success=True,
            operation_id=operation_id,
            source=CreditSource.USAGE_RECORD,
            credits_remaining=0,
            overage_units=unit_cost,
            overage_amount=amount,
        )

    async def refund(
        self,
        installation_id: str,
        operation_id: str,
        reason: str,
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefundResult:
        """
        Reverse a recorded deduction after the try-on failed.

        The record lookup, the ledger write and the refunded mark all happen under
        the installation lock, and the mark is committed before the lock is released.

        Usage records cannot be deleted once created, so metered deductions are
        logged for manual handling and reported as not refunded.
        """
        now = now or utcnow()

        async with self.ledger.locked(installation_id):
            record = self.deductions.get_deduction(installation_id, operation_id)
            if record is None:
                record_refund(source, "rejected")
                return RefundResult(
                    success=False,
                    refunded=False,
                    code=ErrorCode.DEDUCTION_NOT_FOUND,
                    message=f"No deduction recorded for operation {operation_id}",
                )

            recorded_source = CreditSource(record.source)
            if source is not None and source != recorded_source.value:
                logging.warning(
                    "Refund source differs from recorded deduction; using recorded source",
                    extra={"installation_id": installation_id, "operation_id": operation_id, "requested_source": source},
                )

            if record.refunded:
                record_refund(recorded_source.value, "rejected")
                return RefundResult(
                    success=False,
                    refunded=False,
                    source=recorded_source,
                    code=ErrorCode.ALREADY_REFUNDED,
                    message=f"Operation {operation_id} was already refunded",
                )

            if recorded_source == CreditSource.USAGE_RECORD:
                logging.warning(
                    "Usage record refund requested; manual refund may be required",
                    extra={
                        "installation_id": installation_id,
                        "operation_id": operation_id,
                        "usage_record_id": record.usage_record_id,
                        "reason": reason,
                    },
                )
                record_refund(recorded_source.value, "logged_only")
                return RefundResult(success=True, refunded=False, source=recorded_source)

            breakdown = dict(record.breakdown or {})
            account = await self.ledger.read(installation_id)
            changes = refund_changes(account, breakdown)
            if record.overage_units:
                changes.update(
                    untrack_overage_changes(account, record.overage_units, Decimal(record.overage_amount))
                )
            await self.ledger.write(installation_id, changes, account)

            self.deductions.mark_refunded(record, reason, now)
            self.db.commit()

        record_refund(recorded_source.value, "refunded")
        logging.info(
            "Deduction refunded",
            extra={
                "installation_id": installation_id,
                "operation_id": operation_id,
                "source": recorded_source.value,
                "restored": breakdown,
                "reason": reason,
            },
        )
        return RefundResult(success=True, refunded=True, source=recorded_source, restored=breakdown)

    async def get_balance(self, installation_id: str, now: Optional[datetime] = None) -> BalanceSummary:
        now = now or utcnow()
        account = await self.ledger.read(installation_id)
        return BalanceSummary(
            total_balance=account.total_balance,
            balances={credit_type.value: account.balance_of(credit_type) for credit_type in CreditType},
            included_per_period=account.included_per_period,
            used_this_period=account.used_this_period,
            period_end=account.monthly_period_end if account.is_annual else account.period_end,
            is_annual=account.is_annual,
            is_trial=is_in_trial(account, now),
            overage_count=account.overage_count,
            overage_amount=account.overage_amount,
            subscription_line_item_id=account.subscription_line_item_id,
        )

    async def check_availability(self, installation_id: str, required: int = 1) -> Availability:
        """Whether the next `required` credits can be served, and from where"""
        account = await self.ledger.read(installation_id)
        if account.total_balance >= required:
            return Availability(available=True, remaining=account.total_balance, source=CreditSource.METAFIELD.value)

        if account.is_annual:
            return Availability(available=True, remaining=0, source=CreditSource.OVERAGE.value)

        if not account.subscription_line_item_id:
            return Availability(available=False, remaining=0, source="none")

        line_item = await self.billing.get_usage_capacity(account.subscription_line_item_id)
        if line_item is None or line_item.capped_amount is None:
            return Availability(available=False, remaining=0, source="none")

        headroom = line_item.capped_amount - (line_item.balance_used or Decimal("0"))
        remaining = max(0, int(headroom // USAGE_PRICE_PER_CREDIT))
        return Availability(
            available=remaining >= required,
            remaining=remaining,
            source=CreditSource.USAGE_RECORD.value,
            capped_amount=line_item.capped_amount,
        )
