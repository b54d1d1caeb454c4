"""Short-lived read cache for fetched collections."""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# 5 minutes
DEFAULT_TTL_SECONDS = 300.0


class ReadCache:
    """Simple in-memory cache with TTL expiration.

    An entry is visible while ``now - captured_at <= ttl``. Expired entries
    are logically absent even before ``sweep()`` removes them.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Optional[Callable[[], float]] = None):
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._ttl = ttl_seconds
        self._clock = clock or time.time

    @property
    def ttl(self) -> float:
        return self._ttl

    def _expired(self, captured_at: float, now: float) -> bool:
        return now - captured_at > self._ttl

    def get(self, key: str) -> Optional[Any]:
        """Get value if exists and not expired."""
        if key in self._cache:
            value, captured_at = self._cache[key]
            if not self._expired(captured_at, self._clock()):
                return value
            # Expired, remove it
            del self._cache[key]
            logger.debug(f"Cache entry expired: {key}")
        return None

    def set(self, key: str, value: Any) -> None:
        """Set value with current timestamp."""
        self._cache[key] = (value, self._clock())

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def refresh(self, key: str, value: Any) -> bool:
        """Replace the value of a live entry without touching its capture time.

        Returns False, storing nothing, if the entry is absent or expired.
        """
        if self.get(key) is None:
            return False
        self._cache[key] = (value, self._cache[key][1])
        return True

    def invalidate_prefix(self, prefix: str, keep: Optional[str] = None) -> int:
        """Delete every entry whose key starts with ``prefix``, except ``keep``."""
        keys = [k for k in self._cache if k.startswith(prefix) and k != keep]
        for key in keys:
            del self._cache[key]
        return len(keys)

    def clear(self) -> None:
        """Clear all cached values."""
        self._cache.clear()

    def sweep(self) -> int:
        """Delete every expired entry without waiting for a read.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [k for k, (_, ts) in self._cache.items() if self._expired(ts, now)]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._cache)
