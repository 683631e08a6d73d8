"""TTL cache for parsed catalog indexes."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple


class TTLCache:
    """Small expiring cache keyed by string.

    Holds parsed catalog indexes so repeated lookups inside one process do
    not re-read or re-download them. Entries are kept in insertion order;
    once ``max_entries`` is exceeded the oldest are dropped first.
    """

    def __init__(self, default_ttl: int = 300, max_entries: int = 64):
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, value = item
        if time.time() > expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` for ``ttl`` seconds (default TTL when omitted)."""
        self._entries.pop(key, None)
        self._entries[key] = (time.time() + (self._default_ttl if ttl is None else ttl), value)
        while len(self._entries) > self._max_entries:
            del self._entries[next(iter(self._entries))]

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
