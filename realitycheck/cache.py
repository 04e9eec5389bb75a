"""Two-layer research cache with TTL expiry and single-flight fetches.

Layer one is an in-process LRU bounded at ``capacity``; layer two is the
optional ``CacheStore`` table that survives restarts. Every entry expires
``ttl`` seconds after it was created, whichever layer it is read from.

Concurrent callers asking for the same key while a fetch is running share
that fetch: only the first caller (the leader) invokes ``fetch``, the rest
await its future. A failed fetch is raised to every caller and nothing is
stored.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from realitycheck.db import CacheStore
from realitycheck.errors import UpstreamTimeout

log = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    created_at: float
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    fetches: int = 0
    shared: int = 0
    evictions: int = 0
    expirations: int = 0


class ResearchCache:
    def __init__(
        self,
        capacity: int,
        ttl: float,
        store: CacheStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl = ttl
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._inflight: dict[str, asyncio.Future] = {}
        self._stats = CacheStats()

    # -- in-memory layer (callers hold self._lock) --------------------------

    def _lookup(self, key: str, now: float) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            self._stats.expirations += 1
            return None
        self._entries.move_to_end(key)
        return entry

    def _insert(self, key: str, entry: _Entry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            log.debug("Cache evicted %s", evicted[:12])

    # -- public API ----------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return a live in-memory value without fetching (None on miss)."""
        with self._lock:
            entry = self._lookup(key, self._clock())
            return entry.value if entry else None

    async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> tuple[Any, bool]:
        """Return ``(value, from_cache)``.

        ``from_cache`` is False only for the caller that actually ran *fetch*.
        """
        with self._lock:
            entry = self._lookup(key, self._clock())
            if entry is not None:
                self._stats.hits += 1
                return entry.value, True
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = asyncio.get_running_loop().create_future()
                self._inflight[key] = future
                self._stats.misses += 1
            else:
                self._stats.shared += 1

        if not leader:
            value = await asyncio.shield(future)
            return value, True

        try:
            persisted = self._load_persisted(key)
            if persisted is not None:
                self._finish(key, future, value=persisted)
                return persisted.value, True
            with self._lock:
                self._stats.fetches += 1
            value = await fetch()
        except asyncio.CancelledError:
            self._finish(key, future, error=UpstreamTimeout(f"fetch for {key[:12]} abandoned"))
            raise
        except Exception as exc:
            self._finish(key, future, error=exc)
            raise

        now = self._clock()
        entry = _Entry(value=value, created_at=now, expires_at=now + self.ttl)
        self._persist(key, entry)
        self._finish(key, future, value=entry)
        return value, False

    def _load_persisted(self, key: str) -> _Entry | None:
        if self.store is None:
            return None
        now = self._clock()
        try:
            found = self.store.get(key, now)
        except Exception as exc:
            log.warning("Failed to read cache entry %s, treating as miss: %s", key[:12], exc)
            self._discard_persisted(key)
            return None
        if found is None:
            return None
        value, created_at, expires_at = found
        return _Entry(value=value, created_at=created_at, expires_at=expires_at)

    def _persist(self, key: str, entry: _Entry) -> None:
        if self.store is None:
            return
        try:
            self.store.put(key, entry.value, entry.created_at, entry.expires_at)
        except Exception as exc:
            log.warning("Failed to persist cache entry %s: %s", key[:12], exc)

    def _discard_persisted(self, key: str) -> None:
        try:
            self.store.delete(key)
        except Exception as exc:
            log.warning("Failed to drop cache entry %s: %s", key[:12], exc)

    def _finish(self, key: str, future: asyncio.Future, *, value: _Entry | None = None,
                error: BaseException | None = None) -> None:
        with self._lock:
            self._inflight.pop(key, None)
            if value is not None:
                self._insert(key, value)
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
            # Mark retrieved so a fetch nobody else waited on doesn't log.
            future.exception()
        else:
            future.set_result(value.value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
        if self.store is not None:
            self.store.delete(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        if self.store is not None:
            self.store.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in stale:
                del self._entries[k]
            self._stats.expirations += len(stale)
        if self.store is not None:
            self.store.purge_expired(now)
        return len(stale)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(**vars(self._stats))

    def keys(self) -> list[str]:
        """Keys in eviction order (least recently used first)."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
