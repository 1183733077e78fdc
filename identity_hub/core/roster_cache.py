"""Time-bounded cache for the directory roster."""
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RosterCache(Generic[T]):
    """Cache one loaded value for ``ttl`` seconds.

    Args:
        ttl: Lifetime in seconds (0 disables caching)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._loaded_at: Optional[float] = None

    def get_or_load(self, loader: Callable[[], T]) -> T:
        with self._lock:
            if self._is_fresh():
                return self._value  # type: ignore[return-value]
            value = loader()
            if not value:
                # An empty roster usually means the source was unreachable
                self._value, self._loaded_at = None, None
                return value
            self._value = value
            self._loaded_at = self._clock()
            logger.debug("Roster cache refreshed")
            return value

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._loaded_at = None

    def _is_fresh(self) -> bool:
        if self._loaded_at is None or self.ttl <= 0:
            return False
        return self._clock() - self._loaded_at < self.ttl
