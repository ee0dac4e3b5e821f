"""Redis client for session lookup and response-cache keys"""
import logging
from typing import Optional

import redis

from billing_sync.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2
        )
    return _client


def get_session(session_id: str) -> Optional[str]:
    """Get account_id from session"""
    key = f"session:{session_id}"
    return get_redis_client().get(key)


def account_cache_pattern(account_id: str) -> str:
    """Glob matching every cached view that depends on an account's subscription"""
    return f"{settings.CACHE_KEY_PREFIX}:account:{account_id}:*"


def account_cache_key(account_id: str, view: str) -> str:
    """Key for one cached subscription-dependent view"""
    return f"{settings.CACHE_KEY_PREFIX}:account:{account_id}:{view}"
