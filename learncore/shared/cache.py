"""
Injected result caches.
L1: in-memory, L2: SQLite; both expire entries by TTL.
"""

import asyncio
import hashlib
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from learncore.shared.config import CacheConfig
from learncore.shared.logging import get_logger

logger = get_logger(__name__)


class Cache(Protocol):
    """Key/value store with per-entry TTL."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def invalidate_prefix(self, prefix: str) -> None:
        ...


def make_cache_key(operation: str, entity_id: Any, params: Optional[Dict[str, Any]] = None) -> str:
    """Generate cache key: <operation>:<entity_id>:<parameter hash>."""
    encoded = json.dumps(params or {}, sort_keys=True, default=str)
    digest = hashlib.sha256(encoded.encode()).hexdigest()[:16]
    return f"{operation}:{entity_id}:{digest}"


class NullCache:
    """Cache that never stores anything."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any, ttl: int) -> None:
        pass

    def delete(self, key: str) -> None:
        pass

    def invalidate_prefix(self, prefix: str) -> None:
        pass


class MemoryCache:
    """In-process cache; values are kept as-is."""

    def __init__(self, timer: Callable[[], float] = time.time):
        self.timer = timer
        self._entries: Dict[str, Tuple[Any, float]] = {}  # key -> (value, expires_at)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.timer() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (value, self.timer() + ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]


class SQLiteCache:
    """Cache shared across processes; values must be JSON serializable."""

    def __init__(self, db_path: Path, timer: Callable[[], float] = time.time):
        self.db_path = Path(db_path)
        self.timer = timer
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize cache table."""
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("""
            CREATE TABLE IF NOT EXISTS result_cache (
                cache_key TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        conn.commit()
        conn.close()

    def get(self, key: str) -> Optional[Any]:
        conn = sqlite3.connect(str(self.db_path))
        row = conn.execute(
            "SELECT payload, expires_at FROM result_cache WHERE cache_key = ?",
            (key,)
        ).fetchone()
        conn.close()

        if row and self.timer() < row[1]:
            return json.loads(row[0])
        return None

    def set(self, key: str, value: Any, ttl: int) -> None:
        conn = sqlite3.connect(str(self.db_path))
        conn.execute(
            """INSERT OR REPLACE INTO result_cache (cache_key, payload, expires_at)
               VALUES (?, ?, ?)""",
            (key, json.dumps(value, default=str), self.timer() + ttl)
        )
        conn.commit()
        conn.close()

    def delete(self, key: str) -> None:
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("DELETE FROM result_cache WHERE cache_key = ?", (key,))
        conn.commit()
        conn.close()

    def invalidate_prefix(self, prefix: str) -> None:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        conn = sqlite3.connect(str(self.db_path))
        conn.execute(
            "DELETE FROM result_cache WHERE cache_key LIKE ? ESCAPE '\\'",
            (f"{escaped}%",)
        )
        conn.commit()
        conn.close()


class TieredCache:
    """L1 memory in front of L2 SQLite; L2 hits are promoted to L1."""

    def __init__(self, l1: MemoryCache, l2: SQLiteCache, l1_ttl: int = 300):
        self.l1 = l1
        self.l2 = l2
        self.l1_ttl = l1_ttl

    def get(self, key: str) -> Optional[Any]:
        value = self.l1.get(key)
        if value is not None:
            logger.debug(f"L1 cache hit: {key}")
            return value

        value = self.l2.get(key)
        if value is not None:
            logger.debug(f"L2 cache hit: {key}")
            self.l1.set(key, value, self.l1_ttl)
        return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.l2.set(key, value, ttl)
        self.l1.set(key, value, min(ttl, self.l1_ttl))

    def delete(self, key: str) -> None:
        self.l1.delete(key)
        self.l2.delete(key)

    def invalidate_prefix(self, prefix: str) -> None:
        self.l1.invalidate_prefix(prefix)
        self.l2.invalidate_prefix(prefix)


def build_cache(config: CacheConfig) -> Cache:
    """Create the configured cache backend."""
    if config.backend == "none":
        return NullCache()
    if config.backend == "sqlite":
        return SQLiteCache(config.sqlite_path)
    if config.backend == "tiered":
        return TieredCache(MemoryCache(), SQLiteCache(config.sqlite_path))
    return MemoryCache()


class SingleFlight:
    """
    Collapse concurrent calls for the same key into one computation.

    Waiters receive the leader's result or exception.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug(f"Joining in-flight computation: {key}")
            return await asyncio.shield(existing)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await factory()
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # retrieved; waiters still see it
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if not future.done():
                future.cancel()
            self._inflight.pop(key, None)
