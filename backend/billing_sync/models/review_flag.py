"""ReviewFlag model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from datetime import datetime, timezone
from billing_sync.models.base import Base


class ReviewFlag(Base):
    """A degraded transition that an operator should look at"""
    __tablename__ = "review_flags"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(64), nullable=False, index=True)
    external_event_id = Column(String(255), nullable=True)
    reason = Column(String(50), nullable=False)  # 'catalog_unresolved', 'missing_subscription_id'
    detail = Column(Text, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
