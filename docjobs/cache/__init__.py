"""
Counter stores for rate limiting

The in-memory store only counts within one process; deployments with more
than one API instance must use Redis.
"""

from typing import Any, Dict

from .abstract_counter_store import AbstractCounterStore
from .memory_counter_store import InMemoryCounterStore
from .redis_counter_store import RedisCounterStore


def create_counter_store(config: Dict[str, Any]) -> AbstractCounterStore:
    """
    Create a counter store from the cache configuration

    Args:
        config: Cache configuration (``DocJobsConfig.get_cache_config()``)
    """
    cache_type = config.get('type', 'memory')
    if cache_type == 'memory':
        return InMemoryCounterStore()
    if cache_type == 'redis':
        return RedisCounterStore(config)
    raise ValueError(f"Unknown cache type: {cache_type}")


__all__ = ['AbstractCounterStore', 'InMemoryCounterStore', 'RedisCounterStore', 'create_counter_store']
