"""Prometheus metrics for monitoring credit consumption, billing calls and alert delivery"""

from decimal import Decimal

from prometheus_client import Counter, Histogram

# Ledger metrics
deduction_counter = Counter(
    "tryon_deductions_total",
    "Try-on credit deductions",
    ["source", "outcome"],  # metafield | usage_record | overage ; success | failure
)

refund_counter = Counter(
    "tryon_refunds_total",
    "Deduction refunds",
    ["source", "outcome"],  # refunded | logged_only | rejected
)

coupon_redemption_counter = Counter(
    "tryon_coupon_redemptions_total",
    "Coupon redemption attempts",
    ["outcome"],
)

purchase_counter = Counter(
    "tryon_credit_purchases_total",
    "Credit pack purchases credited",
    ["package", "outcome"],
)

# Billing metrics
overage_settlement_counter = Counter(
    "tryon_overage_settlements_total",
    "Annual-plan overage settlements",
    ["outcome"],  # billed | capped | below_minimum | nothing_to_bill
)

overage_billed_amount_counter = Counter(
    "tryon_overage_billed_amount_total",
    "Overage amount charged",
)

billing_api_failures_counter = Counter(
    "billing_api_failures_total",
    "Failed billing API calls",
    ["operation"],
)

# Ledger store metrics
ledger_store_failures_counter = Counter(
    "ledger_store_failures_total",
    "Failed ledger store calls",
    ["operation"],
)

# Notification sink metrics
notification_latency_histogram = Histogram(
    "notification_latency_seconds",
    "Notification sink response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_deduction(source: str | None, success: bool) -> None:
    deduction_counter.labels(source=source or "none", outcome="success" if success else "failure").inc()


def record_refund(source: str | None, outcome: str) -> None:
    refund_counter.labels(source=source or "unknown", outcome=outcome).inc()


def record_coupon_redemption(success: bool) -> None:
    coupon_redemption_counter.labels(outcome="redeemed" if success else "rejected").inc()


def record_purchase(package_id: str, success: bool) -> None:
    purchase_counter.labels(package=package_id, outcome="credited" if success else "failed").inc()


def record_overage_settlement(outcome: str, amount: Decimal = Decimal("0")) -> None:
    """Record settlement outcome; only charged amounts feed the amount counter"""
    overage_settlement_counter.labels(outcome=outcome).inc()
    if amount > 0:
        overage_billed_amount_counter.inc(float(amount))
