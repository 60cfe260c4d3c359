import time
from typing import Callable, Hashable


class ExpiringKeySet:
    """
    Process-local set whose entries expire after a fixed TTL.

    Used to debounce repeated realtime pushes. Entries live only in this
    process, so with several server instances each one debounces on its own.
    """

    def __init__(
        self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expiry: dict[Hashable, float] = {}

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, expires_at in self._expiry.items() if expires_at <= now]
        for key in expired:
            del self._expiry[key]

    def __contains__(self, key: Hashable) -> bool:
        now = self._clock()
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._expiry[key]
            return False
        return True

    def __len__(self) -> int:
        self._evict_expired(self._clock())
        return len(self._expiry)

    def add(self, key: Hashable) -> bool:
        """Adds the key; returns False if it was already present and unexpired."""
        now = self._clock()
        self._evict_expired(now)
        if key in self._expiry:
            return False
        self._expiry[key] = now + self.ttl_seconds
        return True

    def clear(self) -> None:
        self._expiry.clear()
