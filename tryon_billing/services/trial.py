"""Trial manager: applies the trial state machine to stored ledgers"""

from datetime import datetime
from typing import Optional

from tryon_billing.domain.models import CreditAccount, TrialCheck, TrialPhase, TrialStatus
from tryon_billing.domain.trial import (
    TRIAL_CREDITS,
    in_app_notification,
    resolve_trial,
    should_end_trial,
    trial_status,
)
from tryon_billing.infrastructure.observability.logging import log_trial_event
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.utils.date_utils import utcnow


class TrialService:
    """Trial lifecycle for one installation's ledger"""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    async def get_phase(self, installation_id: str, now: Optional[datetime] = None) -> TrialPhase:
        account = await self.ledger.read(installation_id)
        return resolve_trial(account, now or utcnow())

    async def check(self, installation_id: str, now: Optional[datetime] = None) -> TrialCheck:
        account = await self.ledger.read(installation_id)
        return should_end_trial(account, now or utcnow())

    async def get_trial_status(self, installation_id: str, now: Optional[datetime] = None) -> TrialStatus:
        """Trial status with the in-app banner for the latest alert already sent"""
        account = await self.ledger.read(installation_id)
        status = trial_status(account, now or utcnow())
        if status.is_trial and account.notifications_sent:
            status.notification = in_app_notification(
                max(account.notifications_sent), account.trial_used, account.trial_balance
            )
        return status

    async def initialize_trial(self, installation_id: str, now: Optional[datetime] = None) -> CreditAccount:
        """Add trial credits on top of the current balances and stamp the trial start"""
        now = now or utcnow()
        async with self.ledger.locked(installation_id):
            account = await self.ledger.read(installation_id)
            updated = await self.ledger.write(
                installation_id,
                {
                    "trial_balance": account.trial_balance + TRIAL_CREDITS,
                    "total_balance": account.total_balance + TRIAL_CREDITS,
                    "is_trial_period": True,
                    "trial_start_date": now,
                },
                account,
            )

        log_trial_event(installation_id, "started", trial_credits=TRIAL_CREDITS, total_balance=updated.total_balance)
        return updated

    async def end_trial(self, installation_id: str, reason: str, account: CreditAccount | None = None) -> CreditAccount:
        """
        Clear the trial flag. Remaining trial credits stay spendable.

        Callers already holding the installation lock pass the account they read.
        """
        if account is None:
            account = await self.ledger.read(installation_id)
        if not account.is_trial_period:
            return account

        updated = await self.ledger.write(installation_id, {"is_trial_period": False}, account)
        log_trial_event(
            installation_id,
            "ended",
            reason=reason,
            trial_credits_used=updated.trial_used,
            trial_credits_remaining=updated.trial_balance,
        )
        return updated
