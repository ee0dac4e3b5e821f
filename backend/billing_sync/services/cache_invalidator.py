"""Cache invalidator - drops cached subscription-dependent views for an account.

Fire-and-forget: ``invalidate`` hands the work to a background worker and
returns at once. Failures are logged and counted, never raised, so a cache
outage cannot slow or fail a reconciliation that already committed.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from billing_sync.core.metrics import cache_invalidation_failures_counter
from billing_sync.db.redis import account_cache_pattern, get_redis_client

logger = logging.getLogger(__name__)


class RedisCacheInvalidator:
    """Deletes every ``<prefix>:account:<id>:*`` key in the shared response cache"""

    def __init__(self, client_factory: Optional[Callable] = None, background: bool = True):
        self._client_factory = client_factory or get_redis_client
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-invalidate") if background else None

    def invalidate(self, account_id: str) -> None:
        if self._executor is None:
            self._evict(account_id)
            return
        try:
            self._executor.submit(self._evict, account_id)
        except RuntimeError as e:
            # Executor already shut down
            cache_invalidation_failures_counter.inc()
            logger.warning(f"Cache invalidation dropped for account {account_id}: {e}")

    def shutdown(self, wait: bool = True) -> None:
        """Drain pending invalidations"""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _evict(self, account_id: str) -> None:
        try:
            client = self._client_factory()
            keys = list(client.scan_iter(match=account_cache_pattern(account_id), count=100))
            if keys:
                client.delete(*keys)
            logger.debug(f"Invalidated {len(keys)} cached view(s) for account {account_id}")
        except Exception as e:
            cache_invalidation_failures_counter.inc()
            logger.warning(f"Cache invalidation failed for account {account_id}: {e}")
