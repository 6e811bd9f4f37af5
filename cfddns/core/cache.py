"""TTL caches in front of the Cloudflare API.

One :class:`TTLCache` per kind of resource; :class:`HandleCache` bundles
them and is owned by a single handle instance.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Hashable

import cachetools

# Entries per kind; the least recently used entry is evicted beyond this
DEFAULT_MAXSIZE = 4096


class CacheKind(Enum):
    """Kinds of cached API responses."""

    ZONES = "zones"                    # zone name -> [zone ID]
    ZONE_OF_DOMAIN = "zone_of_domain"  # domain -> zone ID
    RECORDS = "records"                # (domain, family) -> [Record]
    LISTS = "lists"                    # account ID -> [WAFListMeta]
    LIST_ID = "list_id"                # WAFList -> list ID
    LIST_ITEMS = "list_items"          # WAFList -> [WAFListItem]


class TTLCache:
    """Thread-safe key/value cache with a fixed time-to-live per entry.

    Backed by :class:`cachetools.TTLCache`. Reads do not extend an entry's
    lifetime and neither does :meth:`update`. A TTL of ``0`` disables caching.
    """

    def __init__(
        self, ttl: float, clock: Callable[[], float] = time.monotonic, maxsize: int = DEFAULT_MAXSIZE,
    ) -> None:
        self.ttl = ttl
        # Values sit in one-element lists so update() can swap them without
        # resetting the expiry cachetools tracks per key.
        self._entries: cachetools.TTLCache = cachetools.TTLCache(maxsize=maxsize, ttl=max(ttl, 0), timer=clock)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def get(self, key: Hashable) -> Any | None:
        """Return the cached value or ``None`` on a miss or expiry."""
        with self._lock:
            slot = self._entries.get(key)
            return None if slot is None else slot[0]

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if self.ttl <= 0:
                self._entries.expire()
                return
            self._entries[key] = [value]

    def update(self, key: Hashable, fn: Callable[[Any], Any]) -> bool:
        """Replace a live entry with ``fn(value)``, keeping its expiry.

        Returns ``False`` (and does nothing) when there is no live entry.
        """
        with self._lock:
            slot = self._entries.get(key)
            if slot is None:
                return False
            slot[0] = fn(slot[0])
            return True

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def delete_expired(self) -> None:
        with self._lock:
            self._entries.expire()


class HandleCache:
    """All caches of one handle, addressed by :class:`CacheKind`."""

    def __init__(self, expiration: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._caches = {kind: TTLCache(expiration, clock) for kind in CacheKind}

    def __getitem__(self, kind: CacheKind) -> TTLCache:
        return self._caches[kind]

    def get(self, kind: CacheKind, key: Hashable) -> Any | None:
        return self._caches[kind].get(key)

    def set(self, kind: CacheKind, key: Hashable, value: Any) -> None:
        self._caches[kind].set(key, value)

    def update(self, kind: CacheKind, key: Hashable, fn: Callable[[Any], Any]) -> bool:
        return self._caches[kind].update(key, fn)

    def invalidate(self, kind: CacheKind, key: Hashable) -> None:
        self._caches[kind].delete(key)

    def invalidate_all(self, kind: CacheKind) -> None:
        self._caches[kind].delete_all()

    def flush(self) -> None:
        for cache in self._caches.values():
            cache.delete_all()
