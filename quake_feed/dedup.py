"""
SignatureTracker - bounded record of accepted event signatures.

Entries expire after a fixed age and the oldest are evicted once the
tracker is full, so a long-running process never grows without bound.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SignatureTracker:
    """
    Tracks signatures of events already delivered downstream.

    Uses an OrderedDict (oldest first) holding the time each signature was
    accepted. Eviction is LRU by size and by age.
    """

    def __init__(
        self,
        max_size: int = 10000,
        max_age_seconds: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize tracker.

        Args:
            max_size: Maximum number of signatures held in memory
            max_age_seconds: Signatures older than this are forgotten (<= 0 disables)
            clock: Monotonic time source, injectable for tests
        """
        self._max_size = max(1, max_size)
        self._max_age = max_age_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._evicted = 0

    def add(self, signature: str) -> bool:
        """
        Record a signature if it has not been seen.

        Returns:
            True if the signature is new, False if it is a duplicate
        """
        with self._lock:
            now = self._clock()
            self._expire(now)
            if signature in self._seen:
                return False

            self._seen[signature] = now
            while len(self._seen) > self._max_size:
                self._seen.popitem(last=False)
                self._evicted += 1
            return True

    def __contains__(self, signature: str) -> bool:
        with self._lock:
            self._expire(self._clock())
            return signature in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def clear(self) -> None:
        """Forget all signatures."""
        with self._lock:
            self._seen.clear()

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "tracked": len(self._seen),
                "evicted": self._evicted,
                "max_size": self._max_size,
                "max_age_seconds": self._max_age,
            }

    def _expire(self, now: float) -> None:
        """Drop entries older than max age. Caller holds the lock."""
        if self._max_age <= 0:
            return
        cutoff = now - self._max_age
        while self._seen:
            signature, accepted_at = next(iter(self._seen.items()))
            if accepted_at > cutoff:
                break
            self._seen.popitem(last=False)
            self._evicted += 1
