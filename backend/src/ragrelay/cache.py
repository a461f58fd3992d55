"""Bounded LRU cache for embedding vectors shared by concurrent requests."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable

from .models import CacheEntry, EmbeddingVector

logger = logging.getLogger(__name__)


def cache_key(text: str, model_id: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{model_id}:{digest}"


class _LoadAbandoned(Exception):
    """Raised to waiters when the task loading their key was cancelled."""


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class EmbeddingCache:
    """LRU cache with single-flight loading per key.

    ``get``, ``put`` and the hit/miss counters are thread-safe: the lock only
    guards O(1) operations and is never held across an await, so a slow load
    for one key does not delay reads of another key. In-flight loads are
    futures of the running event loop; ``get_or_load`` callers must share it.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: dict[str, asyncio.Future[EmbeddingVector]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> EmbeddingVector | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry.vector

    def put(self, key: str, vector: EmbeddingVector) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(vector=vector, inserted_at=time.monotonic())
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted embedding cache entry %s", evicted)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _count(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    async def get_or_load(
        self, key: str, loader: Callable[[], Awaitable[EmbeddingVector]]
    ) -> EmbeddingVector:
        """Return the cached vector for ``key`` or load it exactly once."""

        while True:
            cached = self.get(key)
            if cached is not None:
                self._count(hit=True)
                return cached

            pending = self._inflight.get(key)
            if pending is None:
                break
            try:
                return await asyncio.shield(pending)
            except _LoadAbandoned:
                continue

        self._count(hit=False)
        future: asyncio.Future[EmbeddingVector] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._inflight[key] = future
        try:
            vector = await loader()
        except asyncio.CancelledError:
            future.set_exception(_LoadAbandoned())
            raise
        except Exception as exc:
            future.set_exception(exc)
            raise
        finally:
            self._inflight.pop(key, None)

        self.put(key, vector)
        future.set_result(vector)
        return vector
