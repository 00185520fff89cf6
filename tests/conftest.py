"""Pytest fixtures for testing"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tryon_billing.api.dependencies import get_billing_client, get_ledger_store, get_notification_client
from tryon_billing.api.main import create_app
from tryon_billing.domain.exceptions import BillingAPIError, CappedAmountExceededError
from tryon_billing.domain.models import (
    ActiveSubscription,
    BatchSetResult,
    LineItem,
    OneTimeCharge,
    ShopContact,
    StoreEntry,
    SubscriptionOffer,
    UsageRecord,
)
from tryon_billing.infrastructure.database.models import Base
from tryon_billing.infrastructure.database.session import get_db
from tryon_billing.services.deduction import DeductionService
from tryon_billing.services.ledger import CreditLedger, serialize_field
from tryon_billing.services.overage import OverageBillingService
from tryon_billing.services.renewal import RenewalService

SHOP = "test-shop.myshopify.com"
INSTALLATION_ID = "gid://shopify/AppInstallation/1"

# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeLedgerStore:
    """In-memory ledger store with the LedgerStoreClient interface"""

    def __init__(self, shop_domain: str = SHOP, installation_id: str = INSTALLATION_ID):
        self.shop_domain = shop_domain
        self.installation_id = installation_id
        self.entries: Dict[str, StoreEntry] = {}
        self.batch_calls: List[List[StoreEntry]] = []
        self.write_errors: List[str] = []
        self.read_error: Optional[Exception] = None

    def seed(self, **fields: Any) -> None:
        """Store account fields the way the ledger would serialize them"""
        for name, value in fields.items():
            entry = serialize_field(name, value)
            if entry is not None:
                self.entries[entry.key] = entry

    def value(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        return entry.value if entry else None

    async def get_installation_id(self) -> str:
        if self.read_error:
            raise self.read_error
        return self.installation_id

    async def get_shop_contact(self) -> ShopContact:
        return ShopContact(domain=self.shop_domain, email="owner@test-shop.com", name="Test Shop")

    async def get(self, owner_id: str, namespace: str, keys=None) -> Dict[str, StoreEntry]:
        if self.read_error:
            raise self.read_error
        # yield so concurrent deductions interleave like real network calls
        await asyncio.sleep(0)
        wanted = set(keys) if keys is not None else None
        return {k: v for k, v in self.entries.items() if wanted is None or k in wanted}

    async def batch_set(self, owner_id: str, namespace: str, entries: List[StoreEntry]) -> BatchSetResult:
        self.batch_calls.append(list(entries))
        await asyncio.sleep(0)
        if self.write_errors:
            return BatchSetResult(success=False, errors=list(self.write_errors))
        for entry in entries:
            self.entries[entry.key] = entry
        return BatchSetResult(success=True, written_keys=[e.key for e in entries])


class FakeBillingClient:
    """Records billing calls instead of sending them"""

    def __init__(self, shop_domain: str = SHOP, installation_id: str = INSTALLATION_ID):
        self.shop_domain = shop_domain
        self.installation_id = installation_id
        self.subscriptions_created: List[Dict[str, Any]] = []
        self.one_time_charges: List[Dict[str, Any]] = []
        self.usage_records: List[Dict[str, Any]] = []
        self.active_subscription: Optional[ActiveSubscription] = None
        self.purchases: Dict[str, OneTimeCharge] = {}
        self.usage_capacity: Optional[LineItem] = None
        self.capped = False
        self.error: Optional[BillingAPIError] = None

    async def get_installation_id(self) -> str:
        return self.installation_id

    async def get_shop_contact(self) -> ShopContact:
        return ShopContact(domain=self.shop_domain, email="owner@test-shop.com", name="Test Shop")

    async def create_recurring_subscription(
        self, plan, return_url, trial_days=0, replacement_behavior="APPLY_IMMEDIATELY", test=False
    ) -> SubscriptionOffer:
        if self.error:
            raise self.error
        number = len(self.subscriptions_created) + 1
        self.subscriptions_created.append(
            {
                "plan": plan,
                "return_url": return_url,
                "trial_days": trial_days,
                "replacement_behavior": replacement_behavior,
                "test": test,
            }
        )
        return SubscriptionOffer(
            confirmation_url=f"https://{self.shop_domain}/admin/charges/confirm/{number}",
            subscription_id=f"gid://shopify/AppSubscription/{100 + number}",
            status="PENDING",
        )

    async def create_one_time_charge(self, name, amount, currency, return_url, test=False) -> OneTimeCharge:
        if self.error:
            raise self.error
        number = len(self.one_time_charges) + 1
        self.one_time_charges.append({"name": name, "amount": amount, "currency": currency, "return_url": return_url})
        return OneTimeCharge(
            purchase_id=f"gid://shopify/AppPurchaseOneTime/{number}",
            amount=amount,
            confirmation_url=f"https://{self.shop_domain}/admin/charges/one_time/{number}",
            status="PENDING",
        )

    async def create_usage_record(self, line_item_id, description, amount, idempotency_key, currency="USD") -> UsageRecord:
        if self.capped:
            raise CappedAmountExceededError("Total price exceeds balance remaining")
        if self.error:
            raise self.error
        self.usage_records.append(
            {"line_item_id": line_item_id, "amount": amount, "idempotency_key": idempotency_key}
        )
        return UsageRecord(
            id=f"gid://shopify/AppUsageRecord/{len(self.usage_records)}",
            amount=amount,
            idempotency_key=idempotency_key,
        )

    async def query_active_subscription(self) -> Optional[ActiveSubscription]:
        return self.active_subscription

    async def get_one_time_purchase(self, purchase_id: str) -> Optional[OneTimeCharge]:
        return self.purchases.get(purchase_id)

    async def get_usage_capacity(self, line_item_id: str) -> Optional[LineItem]:
        return self.usage_capacity


class FakeNotificationClient:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_trial_threshold_alert(self, **alert: Any) -> None:
        self.sent.append(alert)


def build_subscription(
    interval: str = "EVERY_30_DAYS",
    subscription_id: str = "gid://shopify/AppSubscription/1",
    period_end=None,
    usage_line_item_id: str = "gid://shopify/AppSubscriptionLineItem/usage-1",
) -> ActiveSubscription:
    """Live subscription as the billing API reports it; usage pricing only on monthly plans"""
    price = Decimal("180.00") if interval == "ANNUAL" else Decimal("23.00")
    line_items = [
        LineItem(
            id=f"{subscription_id}/recurring",
            is_usage=False,
            interval=interval,
            price=price,
            currency="USD",
        )
    ]
    if interval != "ANNUAL":
        line_items.append(
            LineItem(
                id=usage_line_item_id,
                is_usage=True,
                capped_amount=Decimal("50.00"),
                balance_used=Decimal("0"),
                currency="USD",
            )
        )
    return ActiveSubscription(
        id=subscription_id,
        status="ACTIVE",
        current_period_end=period_end,
        name="Plan Standard",
        line_items=line_items,
    )


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def other_db(db: Session) -> Generator[Session, None, None]:
    """Second session on the test database, as a concurrent request would have"""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ledger_store() -> FakeLedgerStore:
    return FakeLedgerStore()


@pytest.fixture
def billing() -> FakeBillingClient:
    return FakeBillingClient()


@pytest.fixture
def notification_client() -> FakeNotificationClient:
    return FakeNotificationClient()


@pytest.fixture
def ledger(ledger_store: FakeLedgerStore) -> CreditLedger:
    return CreditLedger(ledger_store)


@pytest.fixture
def client(
    db: Session,
    ledger_store: FakeLedgerStore,
    billing: FakeBillingClient,
    notification_client: FakeNotificationClient,
) -> TestClient:
    """Create FastAPI test client with test database and in-memory remote services"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_store] = lambda: ledger_store
    app.dependency_overrides[get_billing_client] = lambda: billing
    app.dependency_overrides[get_notification_client] = lambda: notification_client
    return TestClient(app, headers={"X-Shopify-Shop-Domain": SHOP})


@pytest.fixture
def make_subscription():
    return build_subscription


@pytest.fixture
def deductions(ledger: CreditLedger, billing: FakeBillingClient, db: Session) -> DeductionService:
    return DeductionService(ledger, billing, db)


@pytest.fixture
def overage(ledger: CreditLedger, billing: FakeBillingClient) -> OverageBillingService:
    return OverageBillingService(ledger, billing)


@pytest.fixture
def renewal(ledger: CreditLedger, overage: OverageBillingService) -> RenewalService:
    return RenewalService(ledger, overage)
