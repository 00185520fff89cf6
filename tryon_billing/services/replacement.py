"""Replaces an ended trial subscription with a paid subscription"""

import logging
from datetime import datetime
from typing import Optional

from tryon_billing.config import settings
from tryon_billing.domain.catalog import get_plan
from tryon_billing.domain.exceptions import BillingAPIError
from tryon_billing.domain.models import ErrorCode, ReplacementOutcome
from tryon_billing.domain.trial import should_end_trial
from tryon_billing.infrastructure.clients.billing import BillingClient
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.services.trial import TrialService
from tryon_billing.utils.date_utils import utcnow


class ReplacementService:
    """Creates the paid subscription offer once the trial is over"""

    def __init__(self, ledger: CreditLedger, billing: BillingClient, trials: TrialService | None = None):
        self.ledger = ledger
        self.billing = billing
        self.trials = trials or TrialService(ledger)

    async def check_and_replace_trial_if_needed(
        self,
        installation_id: str,
        subscription_id: Optional[str],
        plan_handle: str,
        return_url: str,
        test: bool | None = None,
        now: Optional[datetime] = None,
    ) -> Optional[ReplacementOutcome]:
        """
        Offer the paid plan when the stored trial flag is set and an end condition fired.

        The offer replaces the current subscription immediately once approved.
        Plan credits are not granted here; they arrive when the new subscription
        is reported active.

        Returns:
            None when no replacement is needed, otherwise the outcome

        Raises:
            BillingAPIError: Offer creation failed; trial state is left untouched
        """
        now = now or utcnow()
        plan = get_plan(plan_handle)
        if plan is None:
            return ReplacementOutcome(
                replacement_needed=True,
                code=ErrorCode.INVALID_PLAN,
                reason=f"Unknown plan: {plan_handle}",
                subscription_id=subscription_id,
            )

        async with self.ledger.locked(installation_id):
            account = await self.ledger.read(installation_id)
            check = should_end_trial(account, now)
            if not check.should_end:
                return None

            logging.info(
                "Replacing trial subscription with paid plan",
                extra={
                    "installation_id": installation_id,
                    "subscription_id": subscription_id,
                    "plan_handle": plan.handle,
                    "reason": check.reason,
                },
            )

            try:
                offer = await self.billing.create_recurring_subscription(
                    plan,
                    return_url=return_url,
                    trial_days=0,
                    replacement_behavior="APPLY_IMMEDIATELY",
                    test=settings.billing_test_mode if test is None else test,
                )
            except BillingAPIError as e:
                logging.error(
                    f"Trial replacement failed: {e}",
                    extra={"installation_id": installation_id, "subscription_id": subscription_id},
                )
                raise

            await self.trials.end_trial(installation_id, check.reason, account)

        return ReplacementOutcome(
            replacement_needed=True,
            confirmation_url=offer.confirmation_url,
            reason=check.reason,
            subscription_id=offer.subscription_id,
        )
