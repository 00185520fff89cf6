"""Annual-plan overage billing: accumulated overage settled as a one-time charge"""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from tryon_billing.config import settings
from tryon_billing.domain.catalog import USAGE_CURRENCY
from tryon_billing.domain.models import CreditAccount, OverageSettlement
from tryon_billing.domain.overage import decide_settlement, reset_overage_changes
from tryon_billing.infrastructure.clients.billing import BillingClient
from tryon_billing.infrastructure.observability.logging import log_overage_settlement
from tryon_billing.infrastructure.observability.metrics import record_overage_settlement
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.utils.date_utils import utcnow


def overage_charge_name(overage_count: int, now: datetime) -> str:
    plural = "" if overage_count == 1 else "s"
    return f"Monthly Overage Billing - {overage_count} try-on{plural} ({now.strftime('%B %Y')})"


class OverageBillingService:
    """Settles tracked overage at the monthly rollover of annual plans"""

    def __init__(self, ledger: CreditLedger, billing: BillingClient):
        self.ledger = ledger
        self.billing = billing

    def return_url(self) -> str:
        shop = quote(self.billing.shop_domain, safe="")
        return f"{settings.app_url}/api/billing/return?shop={shop}&type=overage_billing"

    async def bill_accumulated_overage(
        self,
        installation_id: str,
        account: CreditAccount | None = None,
        test: bool | None = None,
        now: Optional[datetime] = None,
    ) -> OverageSettlement:
        """
        Charge the accumulated overage amount.

        Does not take the installation lock; renewal calls it while holding it.
        Counters reset only after the charge has been created, except when
        there is nothing to bill.

        Raises:
            BillingAPIError: Charge creation failed; counters are kept for the next attempt
        """
        now = now or utcnow()
        if account is None:
            account = await self.ledger.read(installation_id)

        decision = decide_settlement(account.overage_amount)
        count = account.overage_count

        if not decision.charge:
            if decision.reset:
                await self.ledger.write(installation_id, reset_overage_changes(now), account)
            outcome = decision.code.value.lower()
            record_overage_settlement(outcome)
            log_overage_settlement(installation_id, outcome, decision.amount, count)
            return OverageSettlement(
                billed=False,
                amount=decision.amount,
                overage_count=0 if decision.reset else count,
                code=decision.code,
                original_amount=decision.original_amount,
            )

        if decision.capped:
            logging.warning(
                "overage_capped",
                extra={
                    "installation_id": installation_id,
                    "original_amount": str(decision.original_amount),
                    "capped_amount": str(decision.amount),
                    "overage_count": count,
                },
            )

        charge = await self.billing.create_one_time_charge(
            name=overage_charge_name(count, now),
            amount=decision.amount,
            currency=USAGE_CURRENCY,
            return_url=self.return_url(),
            test=settings.billing_test_mode if test is None else test,
        )
        await self.ledger.write(installation_id, reset_overage_changes(now), account)

        outcome = "capped" if decision.capped else "billed"
        record_overage_settlement(outcome, decision.amount)
        log_overage_settlement(installation_id, outcome, decision.amount, count, decision.original_amount)
        return OverageSettlement(
            billed=True,
            amount=decision.amount,
            overage_count=count,
            original_amount=decision.original_amount,
            capped=decision.capped,
            purchase_id=charge.purchase_id,
            confirmation_url=charge.confirmation_url,
        )
