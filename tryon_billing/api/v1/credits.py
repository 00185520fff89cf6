"""Credit balance, deduction and refund endpoints"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from tryon_billing.api.dependencies import (
    get_deduction_service,
    get_ledger_store,
    get_notification_service,
    get_request_id,
)
from tryon_billing.api.v1.schemas import BalanceResponse, DeductRequest, DeductResponse, RefundRequest, RefundResponse
from tryon_billing.domain.exceptions import BillingAPIError, LedgerStoreError
from tryon_billing.infrastructure.clients.ledger_store import LedgerStoreClient
from tryon_billing.infrastructure.database.session import get_db
from tryon_billing.services.deduction import DeductionService
from tryon_billing.services.notifications import NotificationService

router = APIRouter()


@router.get("/credits/balance", response_model=BalanceResponse)
async def get_balance(
    request: Request,
    store: LedgerStoreClient = Depends(get_ledger_store),
    deductions: DeductionService = Depends(get_deduction_service),
):
    request_id = get_request_id(request)
    try:
        installation_id = await store.get_installation_id()
        summary = await deductions.get_balance(installation_id)
    except LedgerStoreError as e:
        logging.error(f"Ledger store error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Credit ledger unavailable")

    return BalanceResponse(
        total_balance=summary.total_balance,
        balances=summary.balances,
        included_per_period=summary.included_per_period,
        used_this_period=summary.used_this_period,
        period_end=summary.period_end,
        is_annual=summary.is_annual,
        is_trial=summary.is_trial,
        overage_count=summary.overage_count,
        overage_amount=summary.overage_amount,
        subscription_line_item_id=summary.subscription_line_item_id,
    )


@router.post("/credits/deduct", response_model=DeductResponse)
async def deduct_credit(
    request_body: DeductRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
    store: LedgerStoreClient = Depends(get_ledger_store),
    deductions: DeductionService = Depends(get_deduction_service),
    notifications: NotificationService = Depends(get_notification_service),
):
    """
    Deduct credits for one try-on.

    Flow:
    1. Resolve the installation owning the ledger
    2. Spend ledger credits, or fall back to overage / metered billing
    3. Persist the deduction record for later refunds
    4. Schedule the trial usage alert, if a threshold was crossed
    """
    request_id = get_request_id(request)

    try:
        installation_id = await store.get_installation_id()
        result = await deductions.deduct(
            installation_id,
            unit_cost=request_body.unit_cost,
            operation_id=request_body.operation_id,
        )
        db.commit()

    except (LedgerStoreError, BillingAPIError) as e:
        db.rollback()
        logging.error(f"Deduction failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Billing service unavailable")

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    if result.notification_threshold is not None:
        background_tasks.add_task(
            notifications.notify_threshold,
            store,
            result.notification_threshold,
            result.trial_credits_used or 0,
        )

    return DeductResponse(
        success=result.success,
        operation_id=result.operation_id,
        source=result.source.value if result.source else None,
        credits_remaining=result.credits_remaining,
        breakdown=result.breakdown,
        overage_units=result.overage_units,
        overage_amount=result.overage_amount,
        code=result.code.value if result.code else None,
        message=result.message,
        trial_replacement_needed=result.trial_replacement_needed,
        trial_credits_used=result.trial_credits_used,
    )


@router.post("/credits/refund", response_model=RefundResponse)
async def refund_credit(
    request_body: RefundRequest,
    request: Request,
    db: Session = Depends(get_db),
    store: LedgerStoreClient = Depends(get_ledger_store),
    deductions: DeductionService = Depends(get_deduction_service),
):
    """Reverse the deduction recorded for a failed try-on"""
    request_id = get_request_id(request)

    try:
        installation_id = await store.get_installation_id()
        result = await deductions.refund(
            installation_id,
            request_body.operation_id,
            request_body.reason,
            source=request_body.source,
        )
        db.commit()

    except LedgerStoreError as e:
        db.rollback()
        logging.error(f"Refund failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Credit ledger unavailable")

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    return RefundResponse(
        success=result.success,
        refunded=result.refunded,
        source=result.source.value if result.source else None,
        restored=result.restored,
        code=result.code.value if result.code else None,
        message=result.message,
    )
