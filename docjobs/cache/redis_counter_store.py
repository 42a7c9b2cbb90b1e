import logging
from typing import Any, Dict, Optional

import redis
from redis.exceptions import RedisError

from docjobs.exceptions import CounterStoreUnavailable
from .abstract_counter_store import AbstractCounterStore

logger = logging.getLogger(__name__)

# INCRBY + EXPIRE on first hit, executed atomically by Redis
INCR_WITH_TTL_LUA = r"""
-- KEYS[1] = counter key
-- ARGV[1] = amount
-- ARGV[2] = ttl seconds
local amount = tonumber(ARGV[1])
local value = redis.call("INCRBY", KEYS[1], amount)
if value == amount then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[2]))
end
return value
"""


class RedisCounterStore(AbstractCounterStore):
    """Redis-backed counter store (shared across processes and hosts)"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, client: Optional[Any] = None):
        """
        Initialize Redis counter store

        Args:
            config: Cache configuration with ``url`` and optional ``socket_timeout``
            client: Existing redis client, takes precedence over ``config``
        """
        config = config or {}
        if client is None:
            client = redis.from_url(
                config.get('url', 'redis://localhost:6379/0'),
                socket_timeout=config.get('socket_timeout', 5),
                decode_responses=True
            )
        self.client = client
        self._incr = self.client.register_script(INCR_WITH_TTL_LUA)
        logger.info("Redis counter store initialized")

    def incr(self, key: str, amount: int, ttl: int) -> int:
        try:
            return int(self._incr(keys=[key], args=[int(amount), int(ttl)]))
        except RedisError as e:
            logger.error(f"Redis increment failed for {key}: {e}")
            raise CounterStoreUnavailable() from e

    def get(self, key: str) -> int:
        try:
            value = self.client.get(key)
        except RedisError as e:
            logger.error(f"Redis read failed for {key}: {e}")
            raise CounterStoreUnavailable() from e
        return int(value) if value is not None else 0

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
