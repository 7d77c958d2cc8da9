"""
Two-level cache: in-process TTL/LRU map (L1) over a persistent store (L2).

- L1 is a cachetools.TTLCache guarded by a lock; entries expire by TTL or
  are evicted least-recently-used when the cache is full.
- L2 is any store with get(key) -> bytes | None and set(key, bytes, ttl)
  (see kv_store.py). It is best-effort: CacheError is logged, never raised.
- Concurrent get() calls for the same key share one L2 round trip
  through an in-flight map of key -> Future (stampede protection).

Values are held as encoded bytes in both tiers and decoded on every
get(), so callers never share a mutable object through the cache.
"""

import json
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from cachetools import TTLCache

from errors import CacheError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JsonCodec(Generic[T]):
    """Encode values as compact UTF-8 JSON, with optional domain mapping."""

    def __init__(
        self,
        to_plain: Optional[Callable[[T], Any]] = None,
        from_plain: Optional[Callable[[Any], T]] = None,
    ):
        self._to_plain = to_plain
        self._from_plain = from_plain

    def encode(self, value: T) -> bytes:
        plain = self._to_plain(value) if self._to_plain else value
        return json.dumps(plain, separators=(",", ":")).encode("utf-8")

    def decode(self, raw: bytes) -> T:
        plain = json.loads(raw.decode("utf-8"))
        return self._from_plain(plain) if self._from_plain else plain


@dataclass
class CacheStats:
    name: str
    l1_hits: int = 0
    l2_hits: int = 0
    misses: int = 0
    coalesced: int = 0
    l1_size: int = 0
    l1_max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.l1_hits + self.l2_hits + self.misses
        return (self.l1_hits + self.l2_hits) / total if total else 0.0


class TwoLevelCache(Generic[T]):
    """L1 (TTLCache) + L2 (persistent store) with request coalescing."""

    def __init__(
        self,
        name: str,
        store,
        codec: Optional[JsonCodec] = None,
        max_size: int = 1000,
        ttl_seconds: int = 86400,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._store = store
        self._codec = codec or JsonCodec()
        self._l1: TTLCache = TTLCache(maxsize=max_size, ttl=ttl_seconds, timer=timer)
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._stats = CacheStats(name=name, l1_max_size=max_size)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[T]:
        """Return the cached value, or None on a miss in both tiers."""
        with self._lock:
            raw = self._l1.get(key)
            if raw is not None:
                self._stats.l1_hits += 1
                future = None
                owner = False
            else:
                future = self._pending.get(key)
                owner = future is None
                if owner:
                    future = Future()
                    self._pending[key] = future
                else:
                    self._stats.coalesced += 1

        if raw is not None:
            return self._decode(key, raw)

        if not owner:
            raw = future.result()
            return None if raw is None else self._decode(key, raw)

        try:
            raw = self._read_store(key)
            value = None if raw is None else self._decode(key, raw)
            if value is None:
                raw = None
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
            future.set_exception(exc)
            raise

        with self._lock:
            if raw is not None:
                self._l1[key] = raw
                self._stats.l2_hits += 1
            else:
                self._stats.misses += 1
            self._pending.pop(key, None)
        future.set_result(raw)
        return value

    def _read_store(self, key: str) -> Optional[bytes]:
        if self._store is None:
            return None
        try:
            return self._store.get(key)
        except CacheError:
            logger.warning(
                "%s cache: L2 read failed for %s, treating as miss",
                self.name,
                key,
                exc_info=True,
            )
            return None

    def _decode(self, key: str, raw: bytes) -> Optional[T]:
        try:
            return self._codec.decode(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("%s cache: corrupted entry for %s, ignoring", self.name, key)
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, value: T) -> None:
        """Write L2 (best-effort), then always L1."""
        raw = self._codec.encode(value)
        if self._store is not None:
            try:
                self._store.set(key, raw, self.ttl_seconds)
            except CacheError:
                logger.warning(
                    "%s cache: L2 write failed for %s, keeping L1 only",
                    self.name,
                    key,
                    exc_info=True,
                )
        with self._lock:
            self._l1[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._l1.pop(key, None)
        if self._store is not None:
            try:
                self._store.delete(key)
            except CacheError:
                logger.warning(
                    "%s cache: L2 delete failed for %s", self.name, key, exc_info=True
                )

    def clear_l1(self) -> None:
        with self._lock:
            self._l1.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                l1_hits=self._stats.l1_hits,
                l2_hits=self._stats.l2_hits,
                misses=self._stats.misses,
                coalesced=self._stats.coalesced,
                l1_size=len(self._l1),
                l1_max_size=self._stats.l1_max_size,
            )


class L1OnlyCache(Generic[T]):
    """Same interface as TwoLevelCache without a persistent tier."""

    def __init__(
        self,
        name: str,
        codec: Optional[JsonCodec] = None,
        max_size: int = 1000,
        ttl_seconds: int = 86400,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._codec = codec or JsonCodec()
        self._l1: TTLCache = TTLCache(maxsize=max_size, ttl=ttl_seconds, timer=timer)
        self._lock = threading.Lock()
        self._stats = CacheStats(name=name, l1_max_size=max_size)

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            raw = self._l1.get(key)
            if raw is None:
                self._stats.misses += 1
                return None
            self._stats.l1_hits += 1
        return self._codec.decode(raw)

    def set(self, key: str, value: T) -> None:
        raw = self._codec.encode(value)
        with self._lock:
            self._l1[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._l1.pop(key, None)

    def clear_l1(self) -> None:
        with self._lock:
            self._l1.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                l1_hits=self._stats.l1_hits,
                misses=self._stats.misses,
                l1_size=len(self._l1),
                l1_max_size=self._stats.l1_max_size,
            )
