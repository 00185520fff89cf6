"""Data access layer for billing audit entities"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from tryon_billing.infrastructure.database.models import (
    DeductionRecord,
    ProcessedPurchase,
    ShopSession,
    SubscriptionRecord,
)


class DeductionRepository:
    """Repository for credit deductions"""

    def __init__(self, db: Session):
        self.db = db

    def create_deduction(
        self,
        installation_id: str,
        operation_id: str,
        source: str,
        breakdown: Dict[str, int],
        overage_units: int = 0,
        overage_amount: Decimal = Decimal("0"),
        usage_record_id: Optional[str] = None,
    ) -> DeductionRecord:
        """Persist deduction so it can be matched by a later refund"""
        record = DeductionRecord(
            installation_id=installation_id,
            operation_id=operation_id,
            source=source,
            breakdown=breakdown,
            overage_units=overage_units,
            overage_amount=overage_amount,
            usage_record_id=usage_record_id,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def get_deduction(self, installation_id: str, operation_id: str) -> Optional[DeductionRecord]:
        return (
            self.db.query(DeductionRecord)
            .filter(
                DeductionRecord.installation_id == installation_id,
                DeductionRecord.operation_id == operation_id,
            )
            .first()
        )

    def mark_refunded(self, record: DeductionRecord, reason: str, refunded_at: datetime) -> DeductionRecord:
        record.refunded = True
        record.refund_reason = reason
        record.refunded_at = refunded_at
        self.db.flush()
        return record


class SubscriptionRepository:
    """Repository for observed subscription state"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_shop(self, shop_domain: str) -> Optional[SubscriptionRecord]:
        return self.db.query(SubscriptionRecord).filter(SubscriptionRecord.shop_domain == shop_domain).first()

    def upsert(
        self,
        shop_domain: str,
        subscription_id: Optional[str],
        status: Optional[str],
        plan_handle: Optional[str],
        current_period_end: Optional[datetime],
    ) -> SubscriptionRecord:
        """Insert or overwrite the shop's subscription row"""
        record = self.get_by_shop(shop_domain)
        if record is None:
            record = SubscriptionRecord(shop_domain=shop_domain)
            self.db.add(record)

        record.subscription_id = subscription_id
        record.status = status
        record.plan_handle = plan_handle
        record.current_period_end = current_period_end
        self.db.flush()
        return record


class ShopSessionRepository:
    """Repository for offline access tokens"""

    def __init__(self, db: Session):
        self.db = db

    def get_access_token(self, shop_domain: str) -> Optional[str]:
        session = self.db.get(ShopSession, shop_domain)
        return session.access_token if session else None

    def save(self, shop_domain: str, access_token: str, scope: Optional[str] = None) -> ShopSession:
        session = self.db.get(ShopSession, shop_domain)
        if session is None:
            session = ShopSession(shop_domain=shop_domain, access_token=access_token, scope=scope)
            self.db.add(session)
        else:
            session.access_token = access_token
            session.scope = scope
        self.db.flush()
        return session


class PurchaseRepository:
    """Repository for credited one-time purchases"""

    def __init__(self, db: Session):
        self.db = db

    def is_processed(self, purchase_id: str) -> bool:
        return self.db.get(ProcessedPurchase, purchase_id) is not None

    def record_purchase(self, purchase_id: str, shop_domain: str, package_id: str, credits: int) -> ProcessedPurchase:
        purchase = ProcessedPurchase(
            purchase_id=purchase_id,
            shop_domain=shop_domain,
            package_id=package_id,
            credits=credits,
        )
        self.db.add(purchase)
        self.db.flush()
        return purchase
