"""Account model"""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing_sync.models.base import Base


class Account(Base):
    """Local view of an account owned by the host application"""
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    external_customer_id = Column(String(255), unique=True, nullable=True, index=True)  # Stripe customer ID, immutable once set
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("SubscriptionRecord", back_populates="account", uselist=False, cascade="all, delete-orphan")
