"""Subscription webhook intake: keeps ledgers in step with billing status changes"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from tryon_billing.domain.catalog import get_plan, match_plan
from tryon_billing.domain.models import ActiveSubscription, CreditAccount, Plan, SubscriptionUpdateOutcome
from tryon_billing.infrastructure.clients.billing import BillingClient
from tryon_billing.infrastructure.database.repositories import SubscriptionRepository
from tryon_billing.services.ledger import CreditLedger
from tryon_billing.services.renewal import RenewalService
from tryon_billing.utils.date_utils import first_day_of_next_month, parse_datetime, utcnow

ACTIVE = "ACTIVE"


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def match_subscription_plan(node: Dict[str, Any], active: Optional[ActiveSubscription]) -> Optional[Plan]:
    """
    Catalog plan for a subscription.

    An explicit plan handle wins. Otherwise the recurring price, interval and
    currency are matched, preferring the live subscription over the payload.
    """
    plan = get_plan(node.get("plan_handle"))
    if plan is not None:
        return plan

    price = _decimal(node.get("price"))
    interval = node.get("interval")
    currency = node.get("currency")

    if active is not None:
        recurring = next((item for item in active.line_items if not item.is_usage), None)
        if recurring is not None:
            price = recurring.price if recurring.price is not None else price
            interval = recurring.interval or interval
            currency = recurring.currency or currency

    if price is None or not interval or not currency:
        return None

    matches = match_plan(price, str(interval).upper(), str(currency).upper())
    if len(matches) > 1:
        logging.warning(
            "Ambiguous plan match; using the first catalog entry",
            extra={"price": str(price), "interval": interval, "candidates": [p.handle for p in matches]},
        )
    return matches[0] if matches else None


class SubscriptionService:
    """Processes app subscription update webhooks for one shop"""

    def __init__(self, ledger: CreditLedger, billing: BillingClient, renewal: RenewalService, db: Session):
        self.ledger = ledger
        self.billing = billing
        self.renewal = renewal
        self.subscriptions = SubscriptionRepository(db)

    async def process_subscription_update(
        self, shop: str, payload: Dict[str, Any], now: Optional[datetime] = None
    ) -> SubscriptionUpdateOutcome:
        """
        Flow:
        1. Match the subscription to a catalog plan
        2. Store the latest status for the shop
        3. For an active, matched subscription: initialize, activate or renew the ledger

        Raises:
            LedgerStoreError: Ledger unreadable or write rejected
            BillingAPIError: Live subscription lookup or overage settlement failed
        """
        now = now or utcnow()
        node = payload.get("app_subscription") or payload
        status = (node.get("status") or "").upper() or None

        active = await self.billing.query_active_subscription() if status == ACTIVE else None
        subscription_id = (active.id if active else None) or node.get("admin_graphql_api_id") or node.get("id")
        plan = match_subscription_plan(node, active)
        period_end = active.current_period_end if active else parse_datetime(node.get("current_period_end"))

        self.subscriptions.upsert(
            shop_domain=shop,
            subscription_id=subscription_id,
            status=status,
            plan_handle=plan.handle if plan else None,
            current_period_end=period_end,
        )

        if status != ACTIVE or plan is None:
            logging.info(
                "Subscription update stored without ledger changes",
                extra={"shop_domain": shop, "subscription_id": subscription_id, "status": status},
            )
            return SubscriptionUpdateOutcome(
                subscription_id=subscription_id,
                status=status,
                plan_handle=plan.handle if plan else None,
                action="ignored",
            )

        line_item = active.usage_line_item if active else None
        line_item_id = line_item.id if line_item else None
        watermark = first_day_of_next_month(now) if plan.is_annual else period_end

        installation_id = await self.billing.get_installation_id()
        async with self.ledger.locked(installation_id):
            account = await self.ledger.read(installation_id)

            if not account.is_initialized:
                await self.ledger.initialize(
                    installation_id,
                    included_credits=plan.included_credits,
                    period_end=watermark,
                    line_item_id=line_item_id,
                    subscription_id=subscription_id,
                    is_annual=plan.is_annual,
                    account=account,
                    now=now,
                )
                action = "initialized"
                renewal = None

            elif account.subscription_id != subscription_id:
                await self._activate(installation_id, account, plan, subscription_id, line_item_id, watermark, now)
                action = "activated"
                renewal = None

            else:
                renewal = await self.renewal.renew_account(installation_id, account, period_end, plan.is_annual, now)
                if line_item_id and line_item_id != account.subscription_line_item_id:
                    await self.ledger.write(installation_id, {"subscription_line_item_id": line_item_id}, account)
                action = "renewed" if renewal.renewed else "synced"

        logging.info(
            f"Subscription {action}",
            extra={
                "shop_domain": shop,
                "installation_id": installation_id,
                "subscription_id": subscription_id,
                "plan_handle": plan.handle,
                "action": action,
            },
        )
        return SubscriptionUpdateOutcome(
            subscription_id=subscription_id,
            status=status,
            plan_handle=plan.handle,
            action=action,
            renewal=renewal,
        )

    async def _activate(
        self,
        installation_id: str,
        account: CreditAccount,
        plan: Plan,
        subscription_id: Optional[str],
        line_item_id: Optional[str],
        watermark: Optional[datetime],
        now: datetime,
    ) -> CreditAccount:
        """New paid subscription: end the trial flag and grant one allotment on top of existing balances"""
        changes: Dict[str, Any] = {
            "is_trial_period": False,
            "included_per_period": plan.included_credits,
            "plan_balance": account.plan_balance + plan.included_credits,
            "total_balance": account.total_balance + plan.included_credits,
            "used_this_period": 0,
            "last_credit_reset": now,
            "subscription_id": subscription_id,
        }
        if line_item_id:
            changes["subscription_line_item_id"] = line_item_id
        if watermark is not None:
            changes["monthly_period_end" if plan.is_annual else "period_end"] = watermark

        return await self.ledger.write(installation_id, changes, account)
