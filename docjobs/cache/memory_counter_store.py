import threading
import time
from typing import Callable, Dict, Tuple

from .abstract_counter_store import AbstractCounterStore


class InMemoryCounterStore(AbstractCounterStore):
    """
    In-memory counter store (per-process, for development and tests)

    Expired counters are dropped when read and by a full sweep at most once
    per ``purge_interval`` seconds, so keys of past windows do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time, purge_interval: float = 60.0):
        self.clock = clock
        self.purge_interval = purge_interval
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_purge = clock() + purge_interval

    def _live(self, key: str, now: float):
        entry = self._counters.get(key)
        if entry is not None and entry[1] <= now:
            del self._counters[key]
            return None
        return entry

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._next_purge = now + self.purge_interval

    def incr(self, key: str, amount: int, ttl: int) -> int:
        with self._lock:
            now = self.clock()
            if now >= self._next_purge:
                self._purge(now)
            entry = self._live(key, now)
            if entry is None:
                entry = (0, now + ttl)
            value = entry[0] + amount
            self._counters[key] = (value, entry[1])
            return value

    def get(self, key: str) -> int:
        with self._lock:
            entry = self._live(key, self.clock())
            return entry[0] if entry else 0

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
