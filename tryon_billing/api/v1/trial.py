"""Trial status and trial-to-paid replacement endpoints"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from tryon_billing.api.dependencies import (
    get_ledger_store,
    get_replacement_service,
    get_request_id,
    get_shop_domain,
    get_trial_service,
)
from tryon_billing.api.v1.schemas import ReplacementRequest, ReplacementResponse, TrialStatusResponse
from tryon_billing.config import settings
from tryon_billing.domain.exceptions import BillingAPIError, LedgerStoreError
from tryon_billing.infrastructure.clients.ledger_store import LedgerStoreClient
from tryon_billing.services.replacement import ReplacementService
from tryon_billing.services.trial import TrialService

router = APIRouter()


@router.get("/trial/status", response_model=TrialStatusResponse)
async def get_trial_status(
    request: Request,
    store: LedgerStoreClient = Depends(get_ledger_store),
    trials: TrialService = Depends(get_trial_service),
):
    try:
        installation_id = await store.get_installation_id()
        status = await trials.get_trial_status(installation_id)
    except LedgerStoreError as e:
        logging.error(f"Ledger store error: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=503, detail="Credit ledger unavailable")

    return TrialStatusResponse(
        is_trial=status.is_trial,
        state=status.state.value,
        trial_credits_remaining=status.trial_credits_remaining,
        trial_credits_used=status.trial_credits_used,
        trial_credits_total=status.trial_credits_total,
        days_remaining=status.days_remaining,
        days_since_start=status.days_since_start,
        trial_start_date=status.trial_start_date,
        notification=status.notification,
    )


@router.post("/trial/replacement", response_model=ReplacementResponse)
async def replace_trial(
    request_body: ReplacementRequest,
    request: Request,
    shop: str = Depends(get_shop_domain),
    store: LedgerStoreClient = Depends(get_ledger_store),
    replacements: ReplacementService = Depends(get_replacement_service),
):
    """
    Offer the paid plan once the trial has ended.

    Returns replacement_needed=false while the trial is still running.
    """
    request_id = get_request_id(request)
    return_url = request_body.return_url or f"{settings.app_url}/api/billing/return?shop={shop}"

    try:
        installation_id = await store.get_installation_id()
        outcome = await replacements.check_and_replace_trial_if_needed(
            installation_id,
            request_body.subscription_id,
            request_body.plan_handle,
            return_url,
        )
    except (LedgerStoreError, BillingAPIError) as e:
        logging.error(f"Trial replacement failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Billing service unavailable")

    if outcome is None:
        return ReplacementResponse(replacement_needed=False)

    return ReplacementResponse(
        replacement_needed=outcome.replacement_needed,
        confirmation_url=outcome.confirmation_url,
        reason=outcome.reason,
        subscription_id=outcome.subscription_id,
        code=outcome.code.value if outcome.code else None,
    )
