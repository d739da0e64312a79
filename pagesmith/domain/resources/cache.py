"""Bounded, process-local store for fetched resources.

This module provides:
- ``CacheEntry``: one successful fetch plus its freshness deadline and the
  single-flight refresh flag
- ``CacheStore``: LRU map with a hard age ceiling, independent of HTTP
  freshness

``expires_at`` drives stale-while-revalidate; ``max_age`` is only a safety
bound so nothing lingers forever. Entries are replaced whole, never patched,
so a reader always sees either the old or the new snapshot.
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from pagesmith.domain.resources.fetcher import SUCCESSFUL_STATUS_CODES, FetchResult
from pagesmith.domain.resources.freshness import DEFAULT_FRESHNESS, compute_expiry

MAX_ENTRIES = 50
MAX_AGE = 60 * 60 * 24  # 24 hours


@dataclass
class CacheEntry:
    data: Any
    status_code: int
    fetched_at: float
    expires_at: float
    _refreshing: bool = field(default=False, repr=False, compare=False)
    _flag_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def from_result(cls, result: FetchResult, *, default_freshness: float = DEFAULT_FRESHNESS) -> "CacheEntry":
        return cls(
            data=result.data,
            status_code=result.status_code,
            fetched_at=result.fetched_at,
            expires_at=compute_expiry(result.headers, result.fetched_at, default_freshness),
        )

    @property
    def successful(self) -> bool:
        return self.status_code in SUCCESSFUL_STATUS_CODES

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    def expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def max_age(self, now: Optional[float] = None) -> int:
        """Whole seconds of freshness left, never negative."""

        remaining = self.expires_at - (time.time() if now is None else now)
        return max(0, int(math.floor(remaining + 0.5)))

    def lock(self) -> bool:
        """Claim the refresh slot. Only the caller that gets True may refetch."""

        with self._flag_lock:
            if self._refreshing:
                return False
            self._refreshing = True
            return True

    def unlock(self) -> None:
        with self._flag_lock:
            self._refreshing = False


class CacheStore:
    """LRU map of cache key -> ``CacheEntry`` with a hard age ceiling."""

    def __init__(
        self,
        *,
        max_entries: int = MAX_ENTRIES,
        max_age: float = MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.max_age = max_age
        self.clock = clock
        self._entries: "OrderedDict[str, tuple[float, CacheEntry]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            inserted_at, entry = item
            if self.clock() - inserted_at >= self.max_age:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        if not entry.successful:
            raise ValueError(f"Refusing to cache a response with status {entry.status_code}")
        with self._lock:
            self._entries[key] = (self.clock(), entry)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def pop(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            item = self._entries.pop(key, None)
        return item[1] if item else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


__all__ = ["CacheEntry", "CacheStore", "MAX_AGE", "MAX_ENTRIES"]
