"""Redis client for cross-replica sweep locks"""
import logging

import redis

from beltbilling.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

SWEEP_LOCK_PREFIX = "lock:sweep:"


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Replace the shared client (used by tests with fakeredis)"""
    global _client
    _client = client


def acquire_lock(lock_key: str, timeout: int = 30) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock expiration in seconds

    Returns:
        True if lock was acquired, False if lock already exists
    """
    result = get_redis_client().set(lock_key, "1", nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str) -> None:
    """Release a distributed lock by deleting the key."""
    get_redis_client().delete(lock_key)


def sweep_lock_key(task_name: str) -> str:
    return f"{SWEEP_LOCK_PREFIX}{task_name}"
