"""ParkedEvent model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from datetime import datetime, timezone
from billing_sync.models.base import Base


class ParkedEvent(Base):
    """Claimed webhook event whose apply lost every optimistic-lock race"""
    __tablename__ = "parked_events"

    id = Column(Integer, primary_key=True, index=True)
    external_event_id = Column(String(255), unique=True, nullable=False, index=True)
    account_id = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)  # BillingEvent.to_dict()
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(20), default="pending", nullable=False, index=True)  # 'pending', 'resolved'
    attempts = Column(Integer, default=0, nullable=False)
    resolution = Column(String(32), nullable=True)  # LedgerOutcome once resolved
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
