"""Idempotency ledger - at-most-once application of provider events.

A claim is an insert keyed on the provider event id. It is flushed inside the
same transaction as the subscription write, so the row only becomes durable
together with the transition it records: a crash mid-processing leaves no claim
behind and the redelivery is processed in full. The unique primary key makes
concurrent deliveries of one event race on the insert; the loser sees
``IntegrityError`` and short-circuits.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_sync.models.ledger import IdempotencyRecord
from billing_sync.utils.clock import utc_now

logger = logging.getLogger(__name__)


class ClaimResult:
    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"


def is_processed(db: Session, external_event_id: str) -> bool:
    """Cheap pre-check; the insert in try_claim is the authoritative test"""
    return db.get(IdempotencyRecord, external_event_id) is not None


def get_outcome(db: Session, external_event_id: str) -> Optional[str]:
    record = db.get(IdempotencyRecord, external_event_id)
    return record.outcome if record else None


def try_claim(
    db: Session,
    external_event_id: str,
    event_type: str,
    outcome: str,
    account_id: Optional[str] = None,
    processed_at: Optional[datetime] = None
) -> str:
    """Insert the ledger row for an event within the caller's transaction.

    On ALREADY_PROCESSED the session has been rolled back; on CLAIMED the caller
    must commit (or roll back, which releases the claim).
    """
    record = IdempotencyRecord(
        external_event_id=external_event_id,
        event_type=event_type,
        account_id=account_id,
        outcome=outcome,
        processed_at=processed_at or utc_now()
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(f"Event {external_event_id} already claimed")
        return ClaimResult.ALREADY_PROCESSED
    return ClaimResult.CLAIMED


def claim_and_commit(
    db: Session,
    external_event_id: str,
    event_type: str,
    outcome: str,
    account_id: Optional[str] = None
) -> str:
    """Claim an event that needs no state change (stale, unhandled, unmatched)"""
    result = try_claim(db, external_event_id, event_type, outcome, account_id)
    if result == ClaimResult.CLAIMED:
        db.commit()
    return result


def purge_expired(db: Session, retention_days: int, now: Optional[datetime] = None) -> int:
    """Delete ledger rows older than the provider's redelivery window"""
    cutoff = (now or utc_now()) - timedelta(days=retention_days)
    result = db.execute(
        delete(IdempotencyRecord)
        .where(IdempotencyRecord.processed_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    purged = result.rowcount or 0
    if purged:
        logger.info(f"Purged {purged} ledger record(s) processed before {cutoff.isoformat()}")
    return purged
