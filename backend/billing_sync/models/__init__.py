"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from billing_sync.models.base import Base
from billing_sync.models.account import Account
from billing_sync.models.subscription import SubscriptionRecord, SubscriptionStatus
from billing_sync.models.ledger import IdempotencyRecord, LedgerOutcome
from billing_sync.models.parked_event import ParkedEvent
from billing_sync.models.review_flag import ReviewFlag

# Export all for convenience
__all__ = [
    "Base", "Account", "SubscriptionRecord", "SubscriptionStatus",
    "IdempotencyRecord", "LedgerOutcome", "ParkedEvent", "ReviewFlag"
]
