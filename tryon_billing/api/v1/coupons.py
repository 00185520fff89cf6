"""Coupon validation and redemption endpoints"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from tryon_billing.api.dependencies import get_coupon_service, get_ledger_store, get_request_id
from tryon_billing.api.v1.schemas import CouponRedemptionResponse, CouponRequest, CouponValidationResponse
from tryon_billing.domain.exceptions import LedgerStoreError
from tryon_billing.infrastructure.clients.ledger_store import LedgerStoreClient
from tryon_billing.services.coupons import CouponService

router = APIRouter()


@router.post("/coupons/validate", response_model=CouponValidationResponse)
async def validate_coupon(
    request_body: CouponRequest,
    request: Request,
    store: LedgerStoreClient = Depends(get_ledger_store),
    coupons: CouponService = Depends(get_coupon_service),
):
    try:
        installation_id = await store.get_installation_id()
        validation = await coupons.validate_coupon_code(installation_id, request_body.code)
    except LedgerStoreError as e:
        logging.error(f"Ledger store error: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=503, detail="Credit ledger unavailable")

    return CouponValidationResponse(
        valid=validation.valid,
        code=validation.code,
        credits=validation.credits,
        error=validation.error.value if validation.error else None,
        message=validation.message,
    )


@router.post("/coupons/redeem", response_model=CouponRedemptionResponse)
async def redeem_coupon(
    request_body: CouponRequest,
    request: Request,
    store: LedgerStoreClient = Depends(get_ledger_store),
    coupons: CouponService = Depends(get_coupon_service),
):
    """Redeem a coupon into coupon credits; rejected codes return 200 with an error code"""
    try:
        installation_id = await store.get_installation_id()
        result = await coupons.redeem_coupon_code(installation_id, request_body.code)
    except LedgerStoreError as e:
        logging.error(f"Ledger store error: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=503, detail="Credit ledger unavailable")

    return CouponRedemptionResponse(
        success=result.success,
        code=result.code,
        credits_added=result.credits_added,
        new_balance=result.new_balance,
        error=result.error.value if result.error else None,
        message=result.message,
    )
