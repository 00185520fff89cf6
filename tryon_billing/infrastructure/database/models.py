"""SQLAlchemy ORM models for the local billing audit tables"""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class DeductionRecord(Base):
    """One credit deduction, kept so it can be refunded later"""

    __tablename__ = "credit_deduction"
    __table_args__ = (UniqueConstraint("installation_id", "operation_id", name="uq_deduction_operation"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    installation_id = Column(Text, nullable=False, index=True)
    operation_id = Column(Text, nullable=False)
    source = Column(Text, nullable=False)  # metafield | usage_record | overage
    breakdown = Column(JSON, nullable=False, default=dict)
    overage_units = Column(Integer, nullable=False, default=0)
    overage_amount = Column(Numeric(12, 2), nullable=False, default=0)
    usage_record_id = Column(Text, nullable=True)
    refunded = Column(Boolean, nullable=False, default=False)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SubscriptionRecord(Base):
    """Latest subscription status observed for a shop"""

    __tablename__ = "subscription"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_domain = Column(Text, nullable=False, unique=True, index=True)
    subscription_id = Column(Text, nullable=True)
    status = Column(Text, nullable=True)
    plan_handle = Column(Text, nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class ShopSession(Base):
    """Offline Admin API access token per shop"""

    __tablename__ = "shop_session"

    shop_domain = Column(Text, primary_key=True)
    access_token = Column(Text, nullable=False)
    scope = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProcessedPurchase(Base):
    """One-time purchase already credited to a ledger"""

    __tablename__ = "processed_purchase"

    purchase_id = Column(Text, primary_key=True)
    shop_domain = Column(Text, nullable=False, index=True)
    package_id = Column(Text, nullable=False)
    credits = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
