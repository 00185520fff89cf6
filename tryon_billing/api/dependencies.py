"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from tryon_billing.infrastructure.clients.billing import BillingClient
from tryon_billing.infrastructure.clients.ledger_store import LedgerStoreClient
from tryon_billing.infrastructure.clients.notifications import NotificationClient
from tryon_billing.infrastructure.database.repositories import ShopSessionRepository
from tryon_billing.infrastructure.database.session import get_db
from tryon_billing.services.coupons import CouponService
from tryon_billing.services.deduction import DeductionService
from tryon_billing.services.ledger import CreditLedger, InstallationLocks
from tryon_billing.services.notifications import NotificationService
from tryon_billing.services.overage import OverageBillingService
from tryon_billing.services.purchases import PurchaseService
from tryon_billing.services.renewal import RenewalService
from tryon_billing.services.replacement import ReplacementService
from tryon_billing.services.subscriptions import SubscriptionService
from tryon_billing.services.trial import TrialService


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_shop_domain(x_shopify_shop_domain: str | None = Header(default=None)) -> str:
    """Shop resolved by the authentication layer in front of this service"""
    if not x_shopify_shop_domain:
        raise HTTPException(status_code=401, detail="Missing shop domain")
    return x_shopify_shop_domain


def get_access_token(shop: str = Depends(get_shop_domain), db: Session = Depends(get_db)) -> str:
    token = ShopSessionRepository(db).get_access_token(shop)
    if not token:
        raise HTTPException(status_code=401, detail="No session for shop")
    return token


def get_installation_locks(request: Request) -> InstallationLocks:
    return request.app.state.installation_locks


def get_ledger_store(
    shop: str = Depends(get_shop_domain), access_token: str = Depends(get_access_token)
) -> LedgerStoreClient:
    """Provide ledger store client for the shop"""
    return LedgerStoreClient(shop, access_token)


def get_billing_client(
    shop: str = Depends(get_shop_domain), access_token: str = Depends(get_access_token)
) -> BillingClient:
    """Provide billing API client for the shop"""
    return BillingClient(shop, access_token)


def get_notification_client() -> NotificationClient:
    """Provide notification sink client instance"""
    return NotificationClient()


def get_credit_ledger(
    store: LedgerStoreClient = Depends(get_ledger_store),
    locks: InstallationLocks = Depends(get_installation_locks),
) -> CreditLedger:
    return CreditLedger(store, locks)


def get_deduction_service(
    ledger: CreditLedger = Depends(get_credit_ledger),
    billing: BillingClient = Depends(get_billing_client),
    db: Session = Depends(get_db),
) -> DeductionService:
    return DeductionService(ledger, billing, db)


def get_trial_service(ledger: CreditLedger = Depends(get_credit_ledger)) -> TrialService:
    return TrialService(ledger)


def get_replacement_service(
    ledger: CreditLedger = Depends(get_credit_ledger),
    billing: BillingClient = Depends(get_billing_client),
) -> ReplacementService:
    return ReplacementService(ledger, billing)


def get_coupon_service(ledger: CreditLedger = Depends(get_credit_ledger)) -> CouponService:
    return CouponService(ledger)


def get_purchase_service(
    ledger: CreditLedger = Depends(get_credit_ledger),
    billing: BillingClient = Depends(get_billing_client),
    db: Session = Depends(get_db),
) -> PurchaseService:
    return PurchaseService(ledger, billing, db)


def get_notification_service(client: NotificationClient = Depends(get_notification_client)) -> NotificationService:
    return NotificationService(client)


def get_subscription_service(
    ledger: CreditLedger = Depends(get_credit_ledger),
    billing: BillingClient = Depends(get_billing_client),
    db: Session = Depends(get_db),
) -> SubscriptionService:
    renewal = RenewalService(ledger, OverageBillingService(ledger, billing))
    return SubscriptionService(ledger, billing, renewal, db)
