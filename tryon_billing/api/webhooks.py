"""POST /webhooks/app/subscriptions/update - billing status changes from the platform"""

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from tryon_billing.api.dependencies import get_subscription_service
from tryon_billing.api.v1.schemas import WebhookAck
from tryon_billing.config import settings
from tryon_billing.domain.exceptions import BillingAPIError, LedgerStoreError
from tryon_billing.infrastructure.database.session import get_db
from tryon_billing.services.subscriptions import SubscriptionService

router = APIRouter()


def compute_hmac(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


async def verify_webhook(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(default=None),
    x_shopify_topic: str | None = Header(default=None),
    x_shopify_shop_domain: str | None = Header(default=None),
) -> Dict[str, Any]:
    """Reject unsigned or tampered deliveries, then parse the body"""
    if not x_shopify_hmac_sha256 or not x_shopify_topic or not x_shopify_shop_domain:
        raise HTTPException(status_code=401, detail="Missing required webhook headers")

    body = await request.body()
    if not hmac.compare_digest(compute_hmac(body, settings.webhook_secret).encode(), x_shopify_hmac_sha256.encode()):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        return json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON in webhook body")


@router.post("/webhooks/app/subscriptions/update", response_model=WebhookAck)
async def subscription_update(
    payload: Dict[str, Any] = Depends(verify_webhook),
    x_shopify_shop_domain: str = Header(...),
    db: Session = Depends(get_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """
    Sync the ledger with a subscription status change.

    Remote failures answer 503 so the platform redelivers the webhook.
    """
    try:
        outcome = await subscriptions.process_subscription_update(x_shopify_shop_domain, payload)
        db.commit()

    except (LedgerStoreError, BillingAPIError) as e:
        db.rollback()
        logging.error(f"Subscription webhook failed: {e}", extra={"shop_domain": x_shopify_shop_domain})
        raise HTTPException(status_code=503, detail="Billing service unavailable")

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected webhook error: {e}", extra={"shop_domain": x_shopify_shop_domain})
        raise HTTPException(status_code=500, detail="Internal server error")

    return WebhookAck(received=True, action=outcome.action)
