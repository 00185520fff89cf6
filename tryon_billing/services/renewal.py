"""Period renewal: detects rollovers and grants the next period's plan credits"""

from datetime import datetime
from typing import Optional

from tryon_billing.domain.models import CreditAccount, PeriodCheck, RenewalOutcome
from tryon_billing.infrastructure.observability.logging import log_period_renewal
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.services.overage import OverageBillingService
from tryon_billing.utils.date_utils import ensure_utc, first_day_of_next_month, utcnow


def compare_period_end(
    account: CreditAccount,
    new_period_end: Optional[datetime],
    is_annual: bool,
    now: datetime,
) -> PeriodCheck:
    """
    Compare the stored watermark with the incoming period end.

    Annual plans roll over monthly: the incoming value is always the first
    instant of the next calendar month (UTC), whatever the subscription reports.
    Any difference, including a missing watermark, is a new period.
    """
    if is_annual:
        stored = account.monthly_period_end
        incoming = first_day_of_next_month(now)
    else:
        stored = account.period_end
        incoming = ensure_utc(new_period_end) if new_period_end else None

    if incoming is None:
        return PeriodCheck(is_new_period=False, stored_period_end=stored, new_period_end=stored)

    is_new = stored is None or ensure_utc(stored) != incoming
    return PeriodCheck(is_new_period=is_new, stored_period_end=stored, new_period_end=incoming)


class RenewalService:
    """Rolls ledgers into new billing periods"""

    def __init__(self, ledger: CreditLedger, overage: OverageBillingService):
        self.ledger = ledger
        self.overage = overage

    async def check_period_renewal(
        self,
        installation_id: str,
        new_period_end: Optional[datetime],
        is_annual: bool,
        now: Optional[datetime] = None,
    ) -> PeriodCheck:
        account = await self.ledger.read(installation_id)
        return compare_period_end(account, new_period_end, is_annual, now or utcnow())

    async def renew_if_needed(
        self,
        installation_id: str,
        new_period_end: Optional[datetime],
        is_annual: bool,
        now: Optional[datetime] = None,
    ) -> RenewalOutcome:
        async with self.ledger.locked(installation_id):
            account = await self.ledger.read(installation_id)
            return await self.renew_account(installation_id, account, new_period_end, is_annual, now)

    async def renew_account(
        self,
        installation_id: str,
        account: CreditAccount,
        new_period_end: Optional[datetime],
        is_annual: bool,
        now: Optional[datetime] = None,
    ) -> RenewalOutcome:
        """
        Apply a rollover to an account already read under the installation lock.

        Annual plans settle accumulated overage before the new allotment.
        While the trial flag is set only the watermark moves; plan credits
        are granted for paid periods only.

        Raises:
            BillingAPIError: Overage charge failed; the watermark is not moved
            LedgerStoreError: Ledger write rejected
        """
        now = now or utcnow()
        check = compare_period_end(account, new_period_end, is_annual, now)
        if not check.is_new_period:
            return RenewalOutcome(renewed=False, period_end=check.stored_period_end)

        settlement = None
        if is_annual:
            settlement = await self.overage.bill_accumulated_overage(installation_id, account, now=now)

        grant = not account.is_trial_period
        await self.ledger.add_credits_for_period(
            installation_id,
            check.new_period_end,
            is_annual,
            account=account,
            grant=grant,
            now=now,
        )

        credits_added = account.included_per_period if grant else 0
        log_period_renewal(installation_id, credits_added, check.new_period_end, is_annual)
        return RenewalOutcome(
            renewed=True,
            credits_added=credits_added,
            period_end=check.new_period_end,
            overage=settlement,
        )
