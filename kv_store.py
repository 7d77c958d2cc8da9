"""
Persistent key/value stores used as the L2 cache tier.

Two backends share one tiny interface (get / set / delete):

- SQLiteKVStore: raw sqlite3, WAL mode, one connection per call.
  Works locally without additional services.
- RedisKVStore: shared across processes, TTL handled by Redis (SETEX)
  with optional jitter so a batch of keys does not expire at once.

Both are best-effort. Backend failures surface as CacheError, which the
cache tier catches and logs; nothing here is ever fatal to a request.
"""

import logging
import os
import random
import sqlite3
import time
from typing import Callable, Optional

import redis
from redis.exceptions import RedisError

from errors import CacheError

logger = logging.getLogger(__name__)


class SQLiteKVStore:
    """Expiring blob store in a single SQLite table."""

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        self._initialized = False

    def _get_db(self) -> sqlite3.Connection:
        """Get a sqlite3 connection with WAL mode for concurrent reads."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self) -> None:
        """Create the table if it doesn't exist. Safe to call repeatedly."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self._get_db()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS kv_cache (
                    cache_key   TEXT PRIMARY KEY,
                    value       BLOB NOT NULL,
                    expires_at  REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_kv_cache_expires ON kv_cache(expires_at);
            """)
            conn.commit()
        finally:
            conn.close()
        self._initialized = True

    def _ensure_db(self) -> None:
        if not self._initialized:
            self.init_db()

    def get(self, key: str) -> Optional[bytes]:
        try:
            self._ensure_db()
            conn = self._get_db()
            try:
                row = conn.execute(
                    "SELECT value, expires_at FROM kv_cache WHERE cache_key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    return None
                if row["expires_at"] <= self._clock():
                    conn.execute("DELETE FROM kv_cache WHERE cache_key = ?", (key,))
                    conn.commit()
                    return None
                return bytes(row["value"])
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise CacheError(f"SQLite cache read failed for {key}: {e}") from e

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            self._ensure_db()
            conn = self._get_db()
            try:
                conn.execute(
                    """INSERT OR REPLACE INTO kv_cache (cache_key, value, expires_at)
                       VALUES (?, ?, ?)""",
                    (key, sqlite3.Binary(value), self._clock() + ttl_seconds),
                )
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise CacheError(f"SQLite cache write failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._ensure_db()
            conn = self._get_db()
            try:
                conn.execute("DELETE FROM kv_cache WHERE cache_key = ?", (key,))
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise CacheError(f"SQLite cache delete failed for {key}: {e}") from e

    def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        try:
            self._ensure_db()
            conn = self._get_db()
            try:
                cur = conn.execute(
                    "DELETE FROM kv_cache WHERE expires_at <= ?", (self._clock(),)
                )
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise CacheError(f"SQLite cache purge failed: {e}") from e


class RedisKVStore:
    """Redis-backed store. Keys expire via SETEX."""

    def __init__(self, client: "redis.Redis", jitter_seconds: int = 0):
        self._client = client
        self._jitter_seconds = jitter_seconds

    @classmethod
    def from_url(cls, url: str, jitter_seconds: int = 0) -> "RedisKVStore":
        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=int(os.getenv("REDIS_POOL_MAX", "50")),
            socket_connect_timeout=1.0,
            socket_timeout=1.5,
            health_check_interval=30,
            retry_on_timeout=True,
        )
        return cls(redis.Redis(connection_pool=pool), jitter_seconds=jitter_seconds)

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except RedisError as e:
            raise CacheError(f"Redis GET failed for {key}: {e}") from e

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        ttl = int(ttl_seconds)
        if self._jitter_seconds > 0:
            ttl += random.randint(0, self._jitter_seconds)
        try:
            self._client.setex(key, max(ttl, 1), value)
        except RedisError as e:
            raise CacheError(f"Redis SETEX failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as e:
            raise CacheError(f"Redis DEL failed for {key}: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False


def build_kv_store(
    redis_url: Optional[str],
    sqlite_path: str,
    jitter_seconds: int = 0,
):
    """Redis when a URL is configured, otherwise the local SQLite file."""
    if redis_url:
        logger.info("Using Redis L2 cache")
        return RedisKVStore.from_url(redis_url, jitter_seconds=jitter_seconds)
    logger.info("Using SQLite L2 cache at %s", sqlite_path)
    return SQLiteKVStore(sqlite_path)
