"""Trial usage alerts: threshold bookkeeping and delivery to the notification sink"""

import logging
from typing import Any, Dict, Optional, Tuple

from tryon_billing.domain.exceptions import DomainException
from tryon_billing.domain.models import CreditAccount, ShopContact
from tryon_billing.domain.trial import TRIAL_CREDITS, next_notification_threshold, thresholds_to_mark
from tryon_billing.infrastructure.clients.admin_api import AdminAPIClient
from tryon_billing.infrastructure.clients.notifications import NotificationClient


def threshold_changes(account: CreditAccount) -> Tuple[Optional[int], Dict[str, Any]]:
    """
    Threshold to alert for and the ledger change recording it as sent.

    The threshold is marked before delivery so a failed or slow alert is
    never repeated by a later deduction.
    """
    threshold = next_notification_threshold(account)
    if threshold is None:
        return None, {}
    return threshold, {"notifications_sent": thresholds_to_mark(account, threshold)}


class NotificationService:
    """Delivers trial threshold alerts; delivery failures never propagate"""

    def __init__(self, client: NotificationClient | None = None):
        self.client = client or NotificationClient()

    async def send_trial_threshold_alert(self, contact: ShopContact, threshold: int, used: int, remaining: int) -> bool:
        try:
            await self.client.send_trial_threshold_alert(
                shop_domain=contact.domain,
                email=contact.email,
                shop_name=contact.name,
                threshold=threshold,
                used=used,
                remaining=remaining,
            )
        except DomainException as e:
            logging.error(
                f"Trial alert delivery failed: {e}",
                extra={"shop_domain": contact.domain, "threshold": threshold},
            )
            return False

        logging.info(
            "Trial alert sent",
            extra={"shop_domain": contact.domain, "threshold": threshold, "trial_credits_used": used},
        )
        return True

    async def notify_threshold(self, admin: AdminAPIClient, threshold: int, used: int) -> bool:
        """Look up the shop contact and send the alert; meant to run as a background task"""
        try:
            contact = await admin.get_shop_contact()
        except DomainException as e:
            logging.error(
                f"Shop contact lookup failed: {e}",
                extra={"shop_domain": admin.shop_domain, "threshold": threshold},
            )
            return False

        return await self.send_trial_threshold_alert(contact, threshold, used, max(0, TRIAL_CREDITS - used))
