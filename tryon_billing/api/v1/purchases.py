"""Credit package listing and purchase endpoints"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from tryon_billing.api.dependencies import get_ledger_store, get_purchase_service, get_request_id
from tryon_billing.api.v1.schemas import (
    CreditPackageSchema,
    CreditPackagesResponse,
    PurchaseConfirmRequest,
    PurchaseConfirmResponse,
    PurchaseRequest,
    PurchaseResponse,
)
from tryon_billing.domain.exceptions import BillingAPIError, LedgerStoreError
from tryon_billing.domain.models import ErrorCode
from tryon_billing.infrastructure.clients.ledger_store import LedgerStoreClient
from tryon_billing.infrastructure.database.session import get_db
from tryon_billing.services.purchases import PurchaseService, get_credit_packages

router = APIRouter()


@router.get("/credit-packages", response_model=CreditPackagesResponse)
def list_credit_packages():
    return CreditPackagesResponse(
        packages=[
            CreditPackageSchema(
                id=package.id,
                name=package.name,
                credits=package.credits,
                price=package.price,
                currency=package.currency,
                description=package.description,
            )
            for package in get_credit_packages()
        ]
    )


@router.post("/credit-packages/purchase", response_model=PurchaseResponse)
async def create_purchase(
    request_body: PurchaseRequest,
    request: Request,
    purchases: PurchaseService = Depends(get_purchase_service),
):
    """Create a one-time charge; the merchant approves it at confirmation_url"""
    request_id = get_request_id(request)
    try:
        offer = await purchases.create_credit_purchase(request_body.package_id)
    except BillingAPIError as e:
        logging.error(f"Billing API error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Billing service unavailable")

    if offer.error == ErrorCode.INVALID_PACKAGE:
        raise HTTPException(status_code=404, detail=offer.message)

    return PurchaseResponse(
        success=offer.success,
        package_id=offer.package_id,
        confirmation_url=offer.confirmation_url,
        purchase_id=offer.purchase_id,
        price=offer.price,
        currency=offer.currency,
    )


@router.post("/credit-packages/purchase/confirm", response_model=PurchaseConfirmResponse)
async def confirm_purchase(
    request_body: PurchaseConfirmRequest,
    request: Request,
    db: Session = Depends(get_db),
    store: LedgerStoreClient = Depends(get_ledger_store),
    purchases: PurchaseService = Depends(get_purchase_service),
):
    """Credit an approved purchase; repeated confirmations are no-ops"""
    request_id = get_request_id(request)
    try:
        installation_id = await store.get_installation_id()
        result = await purchases.handle_purchase_success(
            installation_id, request_body.purchase_id, request_body.package_id
        )
        db.commit()

    except (LedgerStoreError, BillingAPIError) as e:
        db.rollback()
        logging.error(f"Purchase confirmation failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Billing service unavailable")

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    if result.error == ErrorCode.INVALID_PACKAGE:
        raise HTTPException(status_code=404, detail=result.message)

    return PurchaseConfirmResponse(
        success=result.success,
        purchase_id=result.purchase_id,
        credits_added=result.credits_added,
        new_balance=result.new_balance,
        already_processed=result.already_processed,
        error=result.error.value if result.error else None,
        message=result.message,
    )
