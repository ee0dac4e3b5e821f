"""IdempotencyRecord model"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime, timezone
from billing_sync.models.base import Base


class LedgerOutcome:
    """Terminal result of processing one provider event"""
    APPLIED = "applied"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_STALE = "ignored_stale"
    IGNORED_UNHANDLED = "ignored_unhandled"
    UNMATCHED_ACCOUNT = "unmatched_account"
    DEFERRED = "deferred"


class IdempotencyRecord(Base):
    """One row per distinct provider event id; written once, never updated"""
    __tablename__ = "billing_event_ledger"

    external_event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    account_id = Column(String(64), nullable=True, index=True)
    outcome = Column(String(32), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
