"""Billing API client: subscriptions, one-time charges and metered usage records"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from tryon_billing.config import settings
from tryon_billing.domain.catalog import USAGE_CAPPED_AMOUNT, USAGE_CURRENCY, USAGE_TERMS
from tryon_billing.domain.exceptions import BillingAPIError, CappedAmountExceededError
from tryon_billing.domain.models import (
    ActiveSubscription,
    BillingInterval,
    LineItem,
    OneTimeCharge,
    Plan,
    SubscriptionOffer,
    UsageRecord,
)
from tryon_billing.infrastructure.clients.admin_api import AdminAPIClient, user_error_messages
from tryon_billing.infrastructure.observability.metrics import billing_api_failures_counter
from tryon_billing.utils.date_utils import parse_datetime

LINE_ITEM_FIELDS = """
id
plan {
  pricingDetails {
    __typename
    ... on AppRecurringPricing {
      interval
      price { amount currencyCode }
    }
    ... on AppUsagePricing {
      terms
      cappedAmount { amount currencyCode }
      balanceUsed { amount currencyCode }
    }
  }
}
"""

CREATE_SUBSCRIPTION_MUTATION = """
mutation AppSubscriptionCreate(
  $name: String!
  $returnUrl: URL!
  $lineItems: [AppSubscriptionLineItemInput!]!
  $replacementBehavior: AppSubscriptionReplacementBehavior
  $trialDays: Int
  $test: Boolean
) {
  appSubscriptionCreate(
    name: $name
    returnUrl: $returnUrl
    lineItems: $lineItems
    replacementBehavior: $replacementBehavior
    trialDays: $trialDays
    test: $test
  ) {
    userErrors { field message }
    confirmationUrl
    appSubscription { id status }
  }
}
"""

CREATE_ONE_TIME_CHARGE_MUTATION = """
mutation AppPurchaseOneTimeCreate($name: String!, $price: MoneyInput!, $returnUrl: URL!, $test: Boolean) {
  appPurchaseOneTimeCreate(name: $name, price: $price, returnUrl: $returnUrl, test: $test) {
    userErrors { field message }
    confirmationUrl
    appPurchaseOneTime { id status price { amount currencyCode } }
  }
}
"""

CREATE_USAGE_RECORD_MUTATION = """
mutation AppUsageRecordCreate(
  $subscriptionLineItemId: ID!
  $description: String!
  $price: MoneyInput!
  $idempotencyKey: String!
) {
  appUsageRecordCreate(
    subscriptionLineItemId: $subscriptionLineItemId
    description: $description
    price: $price
    idempotencyKey: $idempotencyKey
  ) {
    userErrors { field message }
    appUsageRecord { id }
  }
}
"""

ACTIVE_SUBSCRIPTIONS_QUERY = f"""
query ActiveSubscriptions {{
  currentAppInstallation {{
    activeSubscriptions {{
      id
      name
      status
      currentPeriodEnd
      lineItems {{ {LINE_ITEM_FIELDS} }}
    }}
  }}
}}
"""

ONE_TIME_PURCHASE_QUERY = """
query OneTimePurchase($id: ID!) {
  node(id: $id) {
    ... on AppPurchaseOneTime { id status price { amount currencyCode } }
  }
}
"""


def _money(node: Dict[str, Any] | None) -> Optional[Decimal]:
    if not node or node.get("amount") is None:
        return None
    return Decimal(str(node["amount"]))


def parse_line_item(node: Dict[str, Any]) -> LineItem:
    details = (node.get("plan") or {}).get("pricingDetails") or {}
    if details.get("__typename") == "AppUsagePricing":
        return LineItem(
            id=node["id"],
            is_usage=True,
            capped_amount=_money(details.get("cappedAmount")),
            balance_used=_money(details.get("balanceUsed")),
            currency=(details.get("cappedAmount") or {}).get("currencyCode"),
        )
    price = details.get("price") or {}
    return LineItem(
        id=node["id"],
        is_usage=False,
        interval=details.get("interval"),
        price=_money(price),
        currency=price.get("currencyCode"),
    )


def parse_subscription(node: Dict[str, Any]) -> ActiveSubscription:
    return ActiveSubscription(
        id=node["id"],
        name=node.get("name"),
        status=node.get("status", ""),
        current_period_end=parse_datetime(node.get("currentPeriodEnd")),
        line_items=[parse_line_item(item) for item in node.get("lineItems") or []],
    )


class BillingClient(AdminAPIClient):
    """Client for the platform billing API"""

    error_class = BillingAPIError

    def __init__(self, *args, **kwargs):
        kwargs.setdefault("timeout", settings.billing_timeout_seconds)
        super().__init__(*args, **kwargs)

    async def _mutate(self, operation: str, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await self.execute(query, variables)
        except BillingAPIError:
            billing_api_failures_counter.labels(operation=operation).inc()
            raise

        result = data.get(operation)
        if result is None:
            billing_api_failures_counter.labels(operation=operation).inc()
            raise BillingAPIError(f"Unexpected response from {operation} - no data returned")

        errors = user_error_messages(result)
        if errors:
            billing_api_failures_counter.labels(operation=operation).inc()
            message = ", ".join(errors)
            if operation == "appUsageRecordCreate" and ("capped amount" in message.lower() or "exceeded" in message.lower()):
                raise CappedAmountExceededError(message)
            raise BillingAPIError(f"{operation} failed: {message}")

        return result

    async def create_recurring_subscription(
        self,
        plan: Plan,
        return_url: str,
        trial_days: int = 0,
        replacement_behavior: str = "APPLY_IMMEDIATELY",
        test: bool = False,
    ) -> SubscriptionOffer:
        """Create a subscription offer the merchant must approve at confirmation_url"""
        line_items: List[Dict[str, Any]] = [
            {
                "plan": {
                    "appRecurringPricingDetails": {
                        "interval": plan.interval.value,
                        "price": {"amount": str(plan.price), "currencyCode": plan.currency},
                    }
                }
            }
        ]

        # Usage pricing is only available on 30-day intervals
        if plan.interval == BillingInterval.MONTHLY:
            line_items.append(
                {
                    "plan": {
                        "appUsagePricingDetails": {
                            "terms": USAGE_TERMS,
                            "cappedAmount": {"amount": str(USAGE_CAPPED_AMOUNT), "currencyCode": USAGE_CURRENCY},
                        }
                    }
                }
            )

        result = await self._mutate(
            "appSubscriptionCreate",
            CREATE_SUBSCRIPTION_MUTATION,
            {
                "name": plan.name,
                "returnUrl": return_url,
                "lineItems": line_items,
                "replacementBehavior": replacement_behavior,
                "trialDays": trial_days,
                "test": test,
            },
        )

        if not result.get("confirmationUrl"):
            raise BillingAPIError("Missing confirmationUrl in subscription response")

        subscription = result.get("appSubscription") or {}
        return SubscriptionOffer(
            confirmation_url=result["confirmationUrl"],
            subscription_id=subscription.get("id"),
            status=subscription.get("status"),
        )

    async def create_one_time_charge(
        self, name: str, amount: Decimal, currency: str, return_url: str, test: bool = False
    ) -> OneTimeCharge:
        result = await self._mutate(
            "appPurchaseOneTimeCreate",
            CREATE_ONE_TIME_CHARGE_MUTATION,
            {
                "name": name,
                "price": {"amount": str(amount), "currencyCode": currency},
                "returnUrl": return_url,
                "test": test,
            },
        )

        purchase = result.get("appPurchaseOneTime") or {}
        if not purchase.get("id"):
            raise BillingAPIError("Unexpected response from appPurchaseOneTimeCreate - missing purchase id")

        return OneTimeCharge(
            purchase_id=purchase["id"],
            amount=amount,
            confirmation_url=result.get("confirmationUrl"),
            status=purchase.get("status"),
        )

    async def create_usage_record(
        self,
        line_item_id: str,
        description: str,
        amount: Decimal,
        idempotency_key: str,
        currency: str = USAGE_CURRENCY,
    ) -> UsageRecord:
        """
        Append a metered usage record. Records cannot be deleted once created.

        Raises:
            CappedAmountExceededError: When the line item's capped amount would be exceeded
            BillingAPIError: On any other failure
        """
        result = await self._mutate(
            "appUsageRecordCreate",
            CREATE_USAGE_RECORD_MUTATION,
            {
                "subscriptionLineItemId": line_item_id,
                "description": description,
                "price": {"amount": str(amount), "currencyCode": currency},
                "idempotencyKey": idempotency_key,
            },
        )
        record = result.get("appUsageRecord") or {}
        return UsageRecord(id=record.get("id"), amount=amount, idempotency_key=idempotency_key)

    async def query_active_subscriptions(self) -> List[ActiveSubscription]:
        try:
            data = await self.execute(ACTIVE_SUBSCRIPTIONS_QUERY)
        except BillingAPIError:
            billing_api_failures_counter.labels(operation="activeSubscriptions").inc()
            raise
        installation = data.get("currentAppInstallation") or {}
        return [parse_subscription(node) for node in installation.get("activeSubscriptions") or []]

    async def query_active_subscription(self) -> Optional[ActiveSubscription]:
        subscriptions = await self.query_active_subscriptions()
        return subscriptions[0] if subscriptions else None

    async def get_usage_capacity(self, line_item_id: str) -> Optional[LineItem]:
        """Usage line item with its capped amount and balance used, if still active"""
        for subscription in await self.query_active_subscriptions():
            for item in subscription.line_items:
                if item.id == line_item_id:
                    return item
        return None

    async def get_one_time_purchase(self, purchase_id: str) -> Optional[OneTimeCharge]:
        try:
            data = await self.execute(ONE_TIME_PURCHASE_QUERY, {"id": purchase_id})
        except BillingAPIError:
            billing_api_failures_counter.labels(operation="appPurchaseOneTime").inc()
            raise
        node = data.get("node")
        if not node:
            return None
        return OneTimeCharge(
            purchase_id=node["id"],
            amount=_money(node.get("price")) or Decimal("0"),
            status=node.get("status"),
        )
