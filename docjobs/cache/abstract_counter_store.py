from abc import ABC, abstractmethod


class AbstractCounterStore(ABC):
    """
    Abstract base class for counter stores backing the rate limiter

    A counter is created lazily by the first increment and expires ``ttl``
    seconds after that first increment. Implementations raise
    CounterStoreUnavailable when the store cannot be reached.
    """

    @abstractmethod
    def incr(self, key: str, amount: int, ttl: int) -> int:
        """
        Atomically add ``amount`` to the counter and return the new value

        Args:
            key: Counter key
            amount: Increment
            ttl: Expiry in seconds, applied when the counter is created
        """
        pass

    @abstractmethod
    def get(self, key: str) -> int:
        """Current counter value, 0 if missing or expired"""
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass
