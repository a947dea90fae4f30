"""
utils/cache.py - Redis cache for wallet snapshots

Graceful degradation: if Redis is disabled or unreachable every call is a
miss and reads go straight to the database. Cached values are only ever
read-side snapshots; the ledger tables stay the source of truth.

Usage:
    from utils.cache import wallet_cache

    snapshot = wallet_cache.get_wallet("rider", 42)
    wallet_cache.set_wallet("rider", 42, snapshot)
    wallet_cache.invalidate("rider", 42)      # after every committed mutation
"""

import json
import logging
import time
from typing import Optional

import redis
from config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_redis_last_fail: float = 0.0       # epoch of last connection failure
_REDIS_RETRY_INTERVAL = 60.0        # seconds before retrying after a failure


def _get_redis() -> Optional[redis.Redis]:
    """Return a Redis client, or None if Redis is disabled / unreachable."""
    global _redis_client, _redis_last_fail

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is not None:
        return _redis_client

    now = time.time()
    if now - _redis_last_fail < _REDIS_RETRY_INTERVAL:
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=2,
        )
        client.ping()
        _redis_client = client
        logger.info("✅ Redis connected for wallet cache")
        return _redis_client
    except Exception as e:
        _redis_last_fail = now
        _redis_client = None
        logger.warning(f"⚠️ Redis unavailable – wallet cache disabled: {e}")
        return None


def wallet_key(entity_type: str, entity_id: int) -> str:
    return f"wallet:{entity_type}:{entity_id}"


class WalletCache:
    """Short-lived wallet snapshots keyed by (entity_type, entity_id)."""

    def get_wallet(self, entity_type: str, entity_id: int) -> Optional[dict]:
        r = _get_redis()
        if r is None:
            return None
        key = wallet_key(entity_type, entity_id)
        try:
            raw = r.get(key)
            return json.loads(raw) if raw is not None else None
        except Exception as e:
            logger.debug(f"Cache GET error for {key}: {e}")
            return None

    def set_wallet(self, entity_type: str, entity_id: int, snapshot: dict, ttl: Optional[int] = None) -> bool:
        r = _get_redis()
        if r is None:
            return False
        key = wallet_key(entity_type, entity_id)
        try:
            r.setex(key, ttl or settings.WALLET_CACHE_TTL, json.dumps(snapshot, default=str))
            return True
        except Exception as e:
            logger.debug(f"Cache SET error for {key}: {e}")
            return False

    def invalidate(self, entity_type: str, entity_id: Optional[int]) -> None:
        """Drop a cached snapshot. Failures are logged, never raised."""
        if entity_id is None:
            return
        r = _get_redis()
        if r is None:
            return
        key = wallet_key(entity_type, entity_id)
        try:
            r.delete(key)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {key}: {e}")

    def ping(self) -> bool:
        r = _get_redis()
        if r is None:
            return False
        try:
            return r.ping()
        except Exception:
            return False


# Module-level singleton
wallet_cache = WalletCache()
