"""Background tasks: parked-event retry and idempotency-ledger purge"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from billing_sync.core.config import settings
from billing_sync.db.session import SessionLocal
from billing_sync.services.subscription_service import SubscriptionService, get_subscription_service

logger = logging.getLogger(__name__)


def retry_parked_once(
    service: Optional[SubscriptionService] = None,
    session_factory: Callable = SessionLocal
) -> Dict[str, int]:
    """One pass over pending parked events"""
    service = service or get_subscription_service()
    db = session_factory()
    try:
        stats = service.retry_parked_events(db)
        if stats["resolved"] or stats["still_pending"]:
            logger.info(
                f"Parked events: {stats['resolved']} resolved, {stats['still_pending']} still pending"
            )
        return stats
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def purge_ledger_once(
    service: Optional[SubscriptionService] = None,
    session_factory: Callable = SessionLocal
) -> int:
    """Delete idempotency records past the retention window"""
    service = service or get_subscription_service()
    db = session_factory()
    try:
        return service.purge_ledger(db)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def parked_retry_task():
    """Background task that re-applies events parked after lock exhaustion"""
    logger.info("Starting parked event retry task...")

    while True:
        try:
            await asyncio.sleep(settings.PARKED_RETRY_INTERVAL_SECONDS)
            # Apply may back off with time.sleep; keep it off the event loop
            await asyncio.to_thread(retry_parked_once)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in parked event retry task: {e}", exc_info=True)


async def ledger_purge_task():
    """Background task that purges idempotency records older than the retention window"""
    logger.info("Starting ledger purge task...")

    while True:
        try:
            await asyncio.sleep(settings.LEDGER_PURGE_INTERVAL_SECONDS)
            await asyncio.to_thread(purge_ledger_once)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in ledger purge task: {e}", exc_info=True)
