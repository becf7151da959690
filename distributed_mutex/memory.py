from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from distributed_mutex.common import ReadResult

logger = logging.getLogger("distributed-mutex.memory")


@dataclass
class _Entry:
    value: str | None
    version: int
    expires_at: float | None


@dataclass
class MemoryStore:
    """In-process key-value store (for tests and single host setups).

    Every successful write gets a new version from a global counter, so a
    version token is never reused for the same key.
    """

    clock: Callable[[], float] = time.monotonic
    """The clock (in seconds) used for ttl eviction."""

    tombstones: bool = False
    """If True, deleted keys are kept as value-less entries with a new version."""

    _entries: dict[str, _Entry] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _versions: itertools.count = field(
        default_factory=lambda: itertools.count(1), repr=False
    )

    def _get(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at is not None:
            if self.clock() >= entry.expires_at:
                logger.debug(f"evict expired key {key}")
                del self._entries[key]
                return None
        return entry

    def _put(self, key: str, value: str | None, ttl: int):
        expires_at = None if ttl == 0 else self.clock() + ttl / 1000.0
        self._entries[key] = _Entry(value, next(self._versions), expires_at)

    def read(self, key: str) -> ReadResult[int]:
        with self._lock:
            entry = self._get(key)
            if entry is None:
                return ReadResult()
            return ReadResult(entry.value, entry.version)

    def add(self, key: str, value: str, ttl: int) -> bool:
        with self._lock:
            if self._get(key) is not None:
                return False
            self._put(key, value, ttl)
            return True

    def cas(self, key: str, value: str, version: int, ttl: int) -> bool:
        with self._lock:
            entry = self._get(key)
            if entry is None or entry.version != version:
                return False
            self._put(key, value, ttl)
            return True

    def delete(self, key: str, version: int) -> bool:
        with self._lock:
            entry = self._get(key)
            if entry is None or entry.version != version:
                return False
            if self.tombstones:
                self._put(key, None, 0)
            else:
                del self._entries[key]
            return True


@dataclass
class AsyncMemoryStore:
    """Asyncio facade of a `MemoryStore` (operations never block)."""

    store: MemoryStore = field(default_factory=MemoryStore)

    async def read(self, key: str) -> ReadResult[int]:
        return self.store.read(key)

    async def add(self, key: str, value: str, ttl: int) -> bool:
        return self.store.add(key, value, ttl)

    async def cas(self, key: str, value: str, version: int, ttl: int) -> bool:
        return self.store.cas(key, value, version, ttl)

    async def delete(self, key: str, version: int) -> bool:
        return self.store.delete(key, version)
