"""Integration tests for trial, replacement, renewal, overage settlement and subscription webhooks"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tryon_billing.domain.exceptions import BillingAPIError
from tryon_billing.domain.models import ErrorCode, TrialState
from tryon_billing.infrastructure.database.repositories import SubscriptionRepository
from tryon_billing.services.replacement import ReplacementService
from tryon_billing.services.subscriptions import SubscriptionService
from tryon_billing.services.trial import TrialService

NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 4, 13, tzinfo=timezone.utc)
RETURN_URL = "https://app.example.com/api/billing/return?shop=test-shop.myshopify.com"


@pytest.fixture
def trials(ledger) -> TrialService:
    return TrialService(ledger)


@pytest.fixture
def replacements(ledger, billing) -> ReplacementService:
    return ReplacementService(ledger, billing)


@pytest.fixture
def subscriptions(ledger, billing, renewal, db) -> SubscriptionService:
    return SubscriptionService(ledger, billing, renewal, db)


def webhook_payload(status: str = "ACTIVE", subscription_id: str = "gid://shopify/AppSubscription/1") -> dict:
    return {
        "app_subscription": {
            "admin_graphql_api_id": subscription_id,
            "name": "Plan Standard",
            "status": status,
        }
    }


# Trial


async def test_initialize_trial_is_additive(trials, ledger_store):
    """Test starting a trial adds 100 credits on top of existing balances"""
    ledger_store.seed(total_balance=20, purchased_balance=20)

    account = await trials.initialize_trial(ledger_store.installation_id, now=NOW)

    assert account.total_balance == 120
    assert account.trial_balance == 100
    assert account.purchased_balance == 20
    assert ledger_store.value("is_trial_period") == "true"
    assert ledger_store.value("trial_start_date") == "2025-03-14T09:30:00Z"


async def test_trial_status_includes_latest_banner(trials, ledger_store):
    """Test the in-app banner reflects the highest alert already sent"""
    ledger_store.seed(
        total_balance=8,
        trial_balance=8,
        trial_used=92,
        is_trial_period=True,
        trial_start_date=NOW - timedelta(days=5),
        notifications_sent=[80, 90],
    )

    status = await trials.get_trial_status(ledger_store.installation_id, now=NOW)

    assert status.is_trial is True
    assert status.days_remaining == 25
    assert status.notification["threshold"] == 90
    assert status.notification["type"] == "warning"


async def test_end_trial_keeps_remaining_credits(trials, ledger_store):
    """Test ending the trial clears the flag but leaves trial credits spendable"""
    ledger_store.seed(total_balance=40, trial_balance=40, trial_used=60, is_trial_period=True, trial_start_date=NOW)

    account = await trials.end_trial(ledger_store.installation_id, "replaced")
    phase = await trials.get_phase(ledger_store.installation_id, now=NOW)

    assert account.is_trial_period is False
    assert account.trial_balance == 40
    assert ledger_store.value("is_trial_period") == "false"
    assert phase.state == TrialState.ENDED


# Replacement


async def test_replacement_not_needed_during_trial(replacements, ledger_store, billing):
    """Test no offer is created while the trial is running"""
    ledger_store.seed(total_balance=50, trial_balance=50, trial_used=50, is_trial_period=True,
                      trial_start_date=NOW - timedelta(days=10))

    outcome = await replacements.check_and_replace_trial_if_needed(
        ledger_store.installation_id, "gid://shopify/AppSubscription/1", "pro-monthly", RETURN_URL, now=NOW
    )

    assert outcome is None
    assert billing.subscriptions_created == []


async def test_replacement_after_credits_exhausted(replacements, ledger_store, billing):
    """Test an exhausted trial is replaced immediately with the paid plan"""
    ledger_store.seed(total_balance=0, trial_used=100, is_trial_period=True, trial_start_date=NOW - timedelta(days=10))

    outcome = await replacements.check_and_replace_trial_if_needed(
        ledger_store.installation_id, "gid://shopify/AppSubscription/1", "pro-monthly", RETURN_URL, test=True, now=NOW
    )

    assert outcome.replacement_needed is True
    assert outcome.reason == "credits exhausted"
    assert outcome.confirmation_url.startswith("https://test-shop.myshopify.com/admin/charges/confirm/")
    assert outcome.subscription_id == "gid://shopify/AppSubscription/101"

    created = billing.subscriptions_created[0]
    assert created["plan"].handle == "pro-monthly"
    assert created["trial_days"] == 0
    assert created["replacement_behavior"] == "APPLY_IMMEDIATELY"
    assert created["test"] is True
    assert ledger_store.value("is_trial_period") == "false"


async def test_replacement_after_thirty_days_keeps_trial_credits(replacements, ledger_store):
    """Test time-based replacement does not touch the remaining trial balance"""
    ledger_store.seed(total_balance=70, trial_balance=70, trial_used=30, is_trial_period=True,
                      trial_start_date=NOW - timedelta(days=31))

    outcome = await replacements.check_and_replace_trial_if_needed(
        ledger_store.installation_id, None, "pro-annual", RETURN_URL, now=NOW
    )

    assert outcome.reason == "30 days"
    assert ledger_store.value("trial_credits_balance") == "70"
    assert ledger_store.value("credit_balance") == "70"


async def test_replacement_unknown_plan(replacements, ledger_store, billing):
    """Test an unknown plan handle is reported without calling billing"""
    ledger_store.seed(total_balance=0, trial_used=100, is_trial_period=True, trial_start_date=NOW)

    outcome = await replacements.check_and_replace_trial_if_needed(
        ledger_store.installation_id, None, "enterprise", RETURN_URL, now=NOW
    )

    assert outcome.code == ErrorCode.INVALID_PLAN
    assert billing.subscriptions_created == []
    assert ledger_store.value("is_trial_period") == "true"


async def test_replacement_billing_failure_keeps_trial(replacements, ledger_store, billing):
    """Test a failed offer leaves the trial flag set for the next attempt"""
    ledger_store.seed(total_balance=0, trial_used=100, is_trial_period=True, trial_start_date=NOW)
    billing.error = BillingAPIError("appSubscriptionCreate failed: Shop is frozen")

    with pytest.raises(BillingAPIError):
        await replacements.check_and_replace_trial_if_needed(
            ledger_store.installation_id, None, "pro-monthly", RETURN_URL, now=NOW
        )

    assert ledger_store.value("is_trial_period") == "true"


async def test_replacement_not_repeated_once_flag_cleared(replacements, ledger_store, billing):
    """Test an already replaced trial is not offered again"""
    ledger_store.seed(total_balance=0, trial_used=100, is_trial_period=False, trial_start_date=NOW)

    outcome = await replacements.check_and_replace_trial_if_needed(
        ledger_store.installation_id, None, "pro-monthly", RETURN_URL, now=NOW
    )

    assert outcome is None
    assert billing.subscriptions_created == []


# Overage settlement


async def test_overage_below_minimum_carries_forward(overage, ledger_store, billing):
    """Test 0.35 of overage is not charged and stays on the ledger"""
    ledger_store.seed(overage_count=1, overage_amount=Decimal("0.35"))

    settlement = await overage.bill_accumulated_overage(ledger_store.installation_id, now=NOW)

    assert settlement.billed is False
    assert settlement.code == ErrorCode.BELOW_MINIMUM
    assert settlement.overage_count == 1
    assert billing.one_time_charges == []
    assert ledger_store.value("overage_amount") == "0.35"


async def test_overage_nothing_to_bill_resets(overage, ledger_store, billing):
    """Test zero overage resets counters without charging"""
    settlement = await overage.bill_accumulated_overage(ledger_store.installation_id, now=NOW)

    assert settlement.code == ErrorCode.NOTHING_TO_BILL
    assert billing.one_time_charges == []
    assert ledger_store.value("overage_count") == "0"
    assert ledger_store.value("last_overage_billed") == "2025-03-14T09:30:00Z"


async def test_overage_charged_and_reset(overage, ledger_store, billing):
    """Test accumulated overage becomes one charge and the counters reset"""
    ledger_store.seed(overage_count=12, overage_amount=Decimal("2.40"))

    settlement = await overage.bill_accumulated_overage(ledger_store.installation_id, now=NOW)

    assert settlement.billed is True
    assert settlement.amount == Decimal("2.40")
    assert settlement.overage_count == 12
    assert billing.one_time_charges[0]["name"] == "Monthly Overage Billing - 12 try-ons (March 2025)"
    assert billing.one_time_charges[0]["amount"] == Decimal("2.40")
    assert "type=overage_billing" in billing.one_time_charges[0]["return_url"]
    assert ledger_store.value("overage_count") == "0"
    assert Decimal(ledger_store.value("overage_amount")) == Decimal("0")


async def test_overage_capped_at_maximum(overage, ledger_store, billing, caplog):
    """Test 15,000 of overage is charged as 10,000 with a capped warning"""
    ledger_store.seed(overage_count=75000, overage_amount=Decimal("15000.00"))

    settlement = await overage.bill_accumulated_overage(ledger_store.installation_id, now=NOW)

    assert settlement.billed is True
    assert settlement.capped is True
    assert settlement.amount == Decimal("10000")
    assert settlement.original_amount == Decimal("15000.00")
    assert billing.one_time_charges[0]["amount"] == Decimal("10000")
    assert "overage_capped" in caplog.text
    assert ledger_store.value("overage_count") == "0"


async def test_overage_charge_failure_keeps_counters(overage, ledger_store, billing):
    """Test a failed charge leaves the accumulated overage for the next attempt"""
    ledger_store.seed(overage_count=12, overage_amount=Decimal("2.40"))
    billing.error = BillingAPIError("appPurchaseOneTimeCreate failed")

    with pytest.raises(BillingAPIError):
        await overage.bill_accumulated_overage(ledger_store.installation_id, now=NOW)

    assert ledger_store.value("overage_count") == "12"
    assert ledger_store.value("overage_amount") == "2.40"


# Renewal


async def test_monthly_renewal_carries_unused_credits(renewal, ledger_store):
    """Test 30 unused plan credits plus the 100 allotment gives 130"""
    ledger_store.seed(
        total_balance=30,
        plan_balance=30,
        used_this_period=70,
        included_per_period=100,
        period_end=datetime(2025, 3, 14, tzinfo=timezone.utc),
        subscription_id="gid://shopify/AppSubscription/1",
    )

    outcome = await renewal.renew_if_needed(ledger_store.installation_id, PERIOD_END, is_annual=False, now=NOW)

    assert outcome.renewed is True
    assert outcome.credits_added == 100
    assert ledger_store.value("credit_balance") == "130"
    assert ledger_store.value("plan_credits_balance") == "130"
    assert ledger_store.value("credits_used_this_period") == "0"
    assert ledger_store.value("current_period_end") == "2025-04-13T00:00:00Z"


async def test_renewal_same_period_is_noop(renewal, ledger_store):
    """Test a repeated webhook for the current period grants nothing"""
    ledger_store.seed(total_balance=30, plan_balance=30, period_end=PERIOD_END)

    outcome = await renewal.renew_if_needed(ledger_store.installation_id, PERIOD_END, is_annual=False, now=NOW)
    check = await renewal.check_period_renewal(ledger_store.installation_id, PERIOD_END, is_annual=False, now=NOW)

    assert outcome.renewed is False
    assert check.is_new_period is False
    assert ledger_store.batch_calls == []
    assert ledger_store.value("credit_balance") == "30"


async def test_renewal_during_trial_moves_watermark_only(renewal, ledger_store):
    """Test no plan credits are granted while the trial flag is set"""
    ledger_store.seed(
        total_balance=60,
        trial_balance=60,
        trial_used=40,
        is_trial_period=True,
        trial_start_date=NOW - timedelta(days=5),
        period_end=datetime(2025, 3, 14, tzinfo=timezone.utc),
    )

    outcome = await renewal.renew_if_needed(ledger_store.installation_id, PERIOD_END, is_annual=False, now=NOW)

    assert outcome.renewed is True
    assert outcome.credits_added == 0
    assert ledger_store.value("credit_balance") == "60"
    assert ledger_store.value("current_period_end") == "2025-04-13T00:00:00Z"


async def test_annual_renewal_settles_overage_first(renewal, ledger_store, billing):
    """Test the monthly rollover of an annual plan bills overage, then grants credits"""
    ledger_store.seed(
        total_balance=0,
        monthly_period_end=datetime(2025, 3, 1, tzinfo=timezone.utc),
        overage_count=10,
        overage_amount=Decimal("2.00"),
    )

    outcome = await renewal.renew_if_needed(ledger_store.installation_id, None, is_annual=True, now=NOW)

    assert outcome.renewed is True
    assert outcome.overage.billed is True
    assert outcome.overage.amount == Decimal("2.00")
    assert len(billing.one_time_charges) == 1
    assert ledger_store.value("plan_credits_balance") == "100"
    assert ledger_store.value("monthly_period_end") == "2025-04-01T00:00:00Z"
    assert ledger_store.value("overage_count") == "0"


async def test_annual_renewal_charge_failure_keeps_watermark(renewal, ledger_store, billing):
    """Test a failed overage charge aborts the rollover so it is retried"""
    ledger_store.seed(
        total_balance=0,
        monthly_period_end=datetime(2025, 3, 1, tzinfo=timezone.utc),
        overage_count=10,
        overage_amount=Decimal("2.00"),
    )
    billing.error = BillingAPIError("appPurchaseOneTimeCreate failed")

    with pytest.raises(BillingAPIError):
        await renewal.renew_if_needed(ledger_store.installation_id, None, is_annual=True, now=NOW)

    assert ledger_store.value("monthly_period_end") == "2025-03-01T00:00:00Z"
    assert ledger_store.value("credit_balance") == "0"


# Subscription webhooks


async def test_webhook_initializes_new_installation(subscriptions, ledger_store, billing, db, make_subscription):
    """Test the first active subscription seeds the ledger with a trial"""
    billing.active_subscription = make_subscription(period_end=PERIOD_END)

    outcome = await subscriptions.process_subscription_update(ledger_store.shop_domain, webhook_payload(), now=NOW)

    assert outcome.action == "initialized"
    assert outcome.plan_handle == "pro-monthly"
    assert ledger_store.value("credit_balance") == "100"
    assert ledger_store.value("trial_credits_balance") == "100"
    assert ledger_store.value("is_trial_period") == "true"
    assert ledger_store.value("subscription_line_item_id") == "gid://shopify/AppSubscriptionLineItem/usage-1"
    assert ledger_store.value("current_period_end") == "2025-04-13T00:00:00Z"

    record = SubscriptionRepository(db).get_by_shop(ledger_store.shop_domain)
    assert record.status == "ACTIVE"
    assert record.plan_handle == "pro-monthly"


async def test_webhook_initializes_annual_plan_monthly_watermark(subscriptions, ledger_store, billing, make_subscription):
    """Test annual plans track a calendar-month watermark and have no usage line item"""
    billing.active_subscription = make_subscription(
        interval="ANNUAL", subscription_id="gid://shopify/AppSubscription/2", period_end=datetime(2026, 3, 14, tzinfo=timezone.utc)
    )

    outcome = await subscriptions.process_subscription_update(
        ledger_store.shop_domain, webhook_payload(subscription_id="gid://shopify/AppSubscription/2"), now=NOW
    )

    assert outcome.plan_handle == "pro-annual"
    assert ledger_store.value("monthly_period_end") == "2025-04-01T00:00:00Z"
    assert ledger_store.value("subscription_line_item_id") is None


async def test_webhook_activation_grants_plan_credits(subscriptions, ledger_store, billing, make_subscription):
    """Test a new paid subscription ends the trial and adds the allotment to leftover credits"""
    ledger_store.seed(
        total_balance=20,
        trial_balance=20,
        trial_used=80,
        is_trial_period=True,
        trial_start_date=NOW - timedelta(days=31),
        subscription_id="gid://shopify/AppSubscription/1",
    )
    billing.active_subscription = make_subscription(subscription_id="gid://shopify/AppSubscription/101", period_end=PERIOD_END)

    outcome = await subscriptions.process_subscription_update(
        ledger_store.shop_domain, webhook_payload(subscription_id="gid://shopify/AppSubscription/101"), now=NOW
    )

    assert outcome.action == "activated"
    assert ledger_store.value("credit_balance") == "120"
    assert ledger_store.value("plan_credits_balance") == "100"
    assert ledger_store.value("trial_credits_balance") == "20"
    assert ledger_store.value("is_trial_period") == "false"
    assert ledger_store.value("subscription_id") == "gid://shopify/AppSubscription/101"


async def test_webhook_renews_existing_subscription(subscriptions, ledger_store, billing, make_subscription):
    """Test a period change on the same subscription renews plan credits"""
    ledger_store.seed(
        total_balance=30,
        plan_balance=30,
        period_end=datetime(2025, 3, 14, tzinfo=timezone.utc),
        subscription_id="gid://shopify/AppSubscription/1",
        subscription_line_item_id="gid://shopify/AppSubscriptionLineItem/usage-1",
    )
    billing.active_subscription = make_subscription(period_end=PERIOD_END)

    outcome = await subscriptions.process_subscription_update(ledger_store.shop_domain, webhook_payload(), now=NOW)
    repeat = await subscriptions.process_subscription_update(ledger_store.shop_domain, webhook_payload(), now=NOW)

    assert outcome.action == "renewed"
    assert outcome.renewal.credits_added == 100
    assert repeat.action == "synced"
    assert ledger_store.value("credit_balance") == "130"


async def test_webhook_syncs_changed_usage_line_item(subscriptions, ledger_store, billing, make_subscription):
    """Test a new usage line item id is stored without renewing"""
    ledger_store.seed(
        total_balance=30,
        plan_balance=30,
        period_end=PERIOD_END,
        subscription_id="gid://shopify/AppSubscription/1",
        subscription_line_item_id="gid://shopify/AppSubscriptionLineItem/old",
    )
    billing.active_subscription = make_subscription(period_end=PERIOD_END)

    outcome = await subscriptions.process_subscription_update(ledger_store.shop_domain, webhook_payload(), now=NOW)

    assert outcome.action == "synced"
    assert ledger_store.value("subscription_line_item_id") == "gid://shopify/AppSubscriptionLineItem/usage-1"
    assert ledger_store.value("credit_balance") == "30"


async def test_webhook_inactive_status_ignored(subscriptions, ledger_store, db):
    """Test cancelled subscriptions are recorded but leave the ledger alone"""
    payload = webhook_payload(status="CANCELLED")
    payload["app_subscription"]["plan_handle"] = "pro-monthly"

    outcome = await subscriptions.process_subscription_update(ledger_store.shop_domain, payload, now=NOW)

    assert outcome.action == "ignored"
    assert ledger_store.batch_calls == []
    assert SubscriptionRepository(db).get_by_shop(ledger_store.shop_domain).status == "CANCELLED"


async def test_webhook_unknown_plan_ignored(subscriptions, ledger_store, billing, make_subscription):
    """Test an active subscription that matches no catalog plan is not credited"""
    active = make_subscription(period_end=PERIOD_END)
    active.line_items[0].price = Decimal("99.00")
    billing.active_subscription = active

    outcome = await subscriptions.process_subscription_update(ledger_store.shop_domain, webhook_payload(), now=NOW)

    assert outcome.action == "ignored"
    assert outcome.plan_handle is None
    assert ledger_store.batch_calls == []
