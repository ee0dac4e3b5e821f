"""SubscriptionRecord model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing_sync.models.base import Base


class SubscriptionStatus:
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"

    ALL = (NONE, TRIALING, ACTIVE, PAST_DUE, UNPAID, CANCELED, INCOMPLETE)
    # Statuses that require a provider subscription to exist
    LIVE = (TRIALING, ACTIVE, PAST_DUE)


class SubscriptionRecord(Base):
    """Authoritative local record of an account's subscription

    Every mutation goes through the reconciler's compare-and-set write.
    """
    __tablename__ = "subscriptions"

    account_id = Column(String(64), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    external_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    external_subscription_id = Column(String(255), nullable=True, index=True)
    plan_id = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.NONE)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    last_applied_event_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    account = relationship("Account", back_populates="subscription")
