"""Credit pack purchases via one-time charges"""

import logging
from typing import List
from urllib.parse import quote

from sqlalchemy.orm import Session

from tryon_billing.config import settings
from tryon_billing.domain.catalog import CREDIT_PACKAGES, get_credit_package
from tryon_billing.domain.exceptions import LedgerStoreError
from tryon_billing.domain.models import CreditPackage, ErrorCode, PurchaseOffer, PurchaseResult
from tryon_billing.infrastructure.clients.billing import BillingClient
from tryon_billing.infrastructure.database.repositories import PurchaseRepository
from tryon_billing.infrastructure.observability.metrics import record_purchase
from tryon_billing.services.ledger import CreditLedger

PURCHASE_ACTIVE = "ACTIVE"


def get_credit_packages() -> List[CreditPackage]:
    return list(CREDIT_PACKAGES.values())


class PurchaseService:
    """Sells credit packs and credits them once the charge is approved"""

    def __init__(self, ledger: CreditLedger, billing: BillingClient, db: Session):
        self.ledger = ledger
        self.billing = billing
        self.purchases = PurchaseRepository(db)

    def return_url(self, package_id: str) -> str:
        shop = quote(self.billing.shop_domain, safe="")
        return f"{settings.app_url}/api/billing/return?shop={shop}&type=credit_purchase&packageId={package_id}"

    async def create_credit_purchase(self, package_id: str, test: bool | None = None) -> PurchaseOffer:
        """
        Create a one-time charge for a credit pack.

        Raises:
            BillingAPIError: Charge creation failed
        """
        package = get_credit_package(package_id)
        if package is None:
            return PurchaseOffer(
                success=False,
                package_id=package_id,
                error=ErrorCode.INVALID_PACKAGE,
                message=f"Credit package not found: {package_id}",
            )

        charge = await self.billing.create_one_time_charge(
            name=f"Credit Package - {package.name}",
            amount=package.price,
            currency=package.currency,
            return_url=self.return_url(package.id),
            test=settings.billing_test_mode if test is None else test,
        )

        logging.info(
            "Credit purchase created",
            extra={
                "shop_domain": self.billing.shop_domain,
                "package_id": package.id,
                "credits": package.credits,
                "purchase_id": charge.purchase_id,
            },
        )
        return PurchaseOffer(
            success=True,
            package_id=package.id,
            confirmation_url=charge.confirmation_url,
            purchase_id=charge.purchase_id,
            price=package.price,
            currency=package.currency,
        )

    async def handle_purchase_success(self, installation_id: str, purchase_id: str, package_id: str) -> PurchaseResult:
        """
        Credit an approved purchase to purchased credits, once per purchase id.

        Raises:
            BillingAPIError: Purchase status lookup failed
        """
        package = get_credit_package(package_id)
        if package is None:
            return PurchaseResult(
                success=False,
                purchase_id=purchase_id,
                error=ErrorCode.INVALID_PACKAGE,
                message=f"Credit package not found: {package_id}",
            )

        async with self.ledger.locked(installation_id):
            if self.purchases.is_processed(purchase_id):
                return PurchaseResult(success=True, purchase_id=purchase_id, already_processed=True)

            charge = await self.billing.get_one_time_purchase(purchase_id)
            if charge is None or (charge.status or "").upper() != PURCHASE_ACTIVE:
                record_purchase(package.id, False)
                return PurchaseResult(
                    success=False,
                    purchase_id=purchase_id,
                    error=ErrorCode.PURCHASE_NOT_ACTIVE,
                    message=f"Purchase {purchase_id} is not active",
                )

            try:
                account = await self.ledger.read(installation_id)
                updated = await self.ledger.write(
                    installation_id,
                    {
                        "purchased_balance": account.purchased_balance + package.credits,
                        "total_balance": account.total_balance + package.credits,
                    },
                    account,
                )
            except LedgerStoreError as e:
                logging.error(
                    f"Failed to add purchased credits: {e}",
                    extra={"installation_id": installation_id, "purchase_id": purchase_id},
                )
                record_purchase(package.id, False)
                return PurchaseResult(
                    success=False,
                    purchase_id=purchase_id,
                    error=ErrorCode.PURCHASE_FAILED,
                    message="Failed to add purchased credits. Please contact support.",
                )

            self.purchases.record_purchase(purchase_id, self.billing.shop_domain, package.id, package.credits)

        record_purchase(package.id, True)
        logging.info(
            "Purchased credits added",
            extra={
                "installation_id": installation_id,
                "purchase_id": purchase_id,
                "package_id": package.id,
                "credits_added": package.credits,
                "total_balance": updated.total_balance,
            },
        )
        return PurchaseResult(
            success=True,
            purchase_id=purchase_id,
            credits_added=package.credits,
            new_balance=updated.total_balance,
        )
