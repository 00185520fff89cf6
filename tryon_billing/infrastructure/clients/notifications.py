"""Notification sink client with exponential backoff retry logic"""

import asyncio
from typing import Any, Dict

import httpx

from tryon_billing.config import settings
from tryon_billing.domain.exceptions import NotificationDeliveryError
from tryon_billing.infrastructure.observability.metrics import (
    notification_failure_counter,
    notification_latency_histogram,
)


class NotificationClient:
    """Client for delivering merchant alerts to the notification sink"""

    def __init__(self, webhook_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = settings.notification_max_retries
        self.backoff_base = settings.notification_backoff_base
        self.transport = transport

    async def send(self, payload: Dict[str, Any]) -> None:
        """
        Post an alert to the sink with retry logic.

        Retry strategy:
        - Exponential backoff: base * 2^(attempt - 1) between attempts
        - Retries on 5xx/4xx responses and network failures
        - Tracks latency histogram and failure counter

        Raises:
            NotificationDeliveryError: After the final attempt fails
        """
        attempt = 0
        async with httpx.AsyncClient(transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    with notification_latency_histogram.time():
                        response = await client.post(
                            self.webhook_url,
                            json=payload,
                            timeout=settings.http_timeout_seconds,
                        )
                        response.raise_for_status()
                        return

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    notification_failure_counter.inc()

                    if attempt >= self.max_retries:
                        raise NotificationDeliveryError(
                            f"Notification delivery failed after {attempt} attempts: {e}"
                        ) from e

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

    async def send_trial_threshold_alert(
        self, shop_domain: str, email: str | None, shop_name: str | None, threshold: int, used: int, remaining: int
    ) -> None:
        await self.send(
            {
                "type": "trial_threshold",
                "shop": shop_domain,
                "email": email,
                "shop_name": shop_name,
                "threshold": threshold,
                "trial_credits_used": used,
                "trial_credits_remaining": remaining,
            }
        )
