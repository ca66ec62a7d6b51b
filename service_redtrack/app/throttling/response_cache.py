"""
In-process TTL cache for upstream JSON responses.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


DEFAULT_CACHE_TTL = 300.0  # seconds


@dataclass(frozen=True)
class CacheEntry:
    """A memoized upstream response keyed by its canonical request URL."""

    key: str
    value: Any
    stored_at: float


class ResponseCache:
    """Maps canonical URLs to responses; entries past the TTL are never served.

    Writes also sweep expired entries, at most once per TTL window, so keys
    that are never read again do not pile up.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._last_sweep: Optional[float] = None

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at >= self.ttl_seconds

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key``, evicting it if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any) -> CacheEntry:
        now = self._clock()
        if self._last_sweep is None or now - self._last_sweep >= self.ttl_seconds:
            self.purge_expired()
            self._last_sweep = now
        entry = CacheEntry(key=key, value=value, stored_at=now)
        self._entries[key] = entry
        return entry

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop one entry, or every entry when ``key`` is None. Returns the count removed."""
        if key is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        return 1 if self._entries.pop(key, None) is not None else 0

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
