"""
Idempotency keys for collapsing duplicate deliveries.

Delivery is at-least-once, so a handler can see the same event twice (after a
timeout that actually succeeded, after a crash, after a manual retry). Handlers
with real side effects check a key before acting; the dispatcher marks the key
returned in an Ack once the delivery is recorded.

Design decisions:
- Bounded: the oldest keys are evicted once max_entries is reached
- Keys expire after a horizon matching the longest redelivery window
  (backoff_cap * max_attempts); after that a duplicate is implausible
- In-memory and thread-safe; handlers running in worker threads may use it
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from shared.models import DeliveryPolicy


def horizon_for(policy: DeliveryPolicy) -> float:
    """Eviction horizon, in seconds, for deliveries made under a policy."""
    return policy.redelivery_window


class IdempotencyCache:
    """
    Expiring, bounded set of idempotency keys.

    Example:
        cache = IdempotencyCache(horizon=horizon_for(policy))
        if not cache.seen("charge:ord-001"):
            charge()
            cache.mark_seen("charge:ord-001")
    """

    def __init__(
        self,
        horizon: float,
        max_entries: int = 100_000,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            horizon: Seconds a key is remembered after it was marked
            max_entries: Upper bound on remembered keys
            clock: Monotonic time source, injectable for tests
        """
        if horizon <= 0:
            raise ValueError("horizon must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.horizon = horizon
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._keys: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def seen(self, key: str) -> bool:
        """True if the key was marked within the horizon."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            return key in self._keys

    def mark_seen(self, key: str) -> None:
        """Remember a key, refreshing its expiry if already present."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            self._keys.pop(key, None)
            self._keys[key] = now + self.horizon
            while len(self._keys) > self.max_entries:
                self._keys.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._keys)

    def _expire(self, now: float) -> None:
        # Keys are kept in expiry order since every insert uses the same horizon.
        while self._keys:
            key, expires_at = next(iter(self._keys.items()))
            if expires_at > now:
                break
            self._keys.popitem(last=False)
