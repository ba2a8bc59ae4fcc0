"""SQLite-backed multi-collection store with an expiring cache.

sqlite3 is blocking; every collection/cache operation is pushed onto a worker
thread with ``asyncio.to_thread`` so callers only ever see coroutines. The
key-value half of the contract stays synchronous (small rows, one statement).
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sqlite3
import threading
from pathlib import Path
from typing import Any

from storyforge.storage.base import (
    CACHE,
    ILLUSTRATIONS,
    STORIES,
    StorageErrorCallback,
    StorageUsage,
    now_ms,
)

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

# collection → primary-key column
_KEY_COLUMNS = {STORIES: "id", ILLUSTRATIONS: "story_id"}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS stories (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    saved_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS illustrations (
    story_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    saved_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS cache (
    key TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL
);
"""


class CollectionStore:
    """Asynchronous store with named collections (stories, illustrations, cache)."""

    def __init__(
        self,
        path: Path | str = MEMORY,
        on_error: StorageErrorCallback | None = None,
    ) -> None:
        self.path = path
        self._on_error = on_error
        self._lock = threading.Lock()
        if path != MEMORY:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.debug("Collection store opened at %s", path)

    @property
    def name(self) -> str:
        return "collections"

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _emit(self, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.warning("Storage error callback failed: %s", e)

    def _write(self, sql: str, params: tuple = ()) -> None:
        with self._lock:
            self._conn.execute(sql, params)
            self._conn.commit()

    def _read(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ── Key-value ─────────────────────────────────────────────

    def save(self, key: str, value: Any) -> bool:
        try:
            text = json.dumps(value, ensure_ascii=False)
            self._write("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, text))
            return True
        except (TypeError, ValueError) as e:
            logger.warning("Value for %s is not serializable: %s", key, e)
            return False
        except sqlite3.Error as e:
            logger.warning("Failed to save %s to storage: %s", key, e)
            self._emit(e)
            return False

    def load(self, key: str) -> Any | None:
        try:
            rows = self._read("SELECT value FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            logger.warning("Failed to load %s from storage: %s", key, e)
            return None
        if not rows:
            return None
        try:
            return json.loads(rows[0][0])
        except json.JSONDecodeError as e:
            logger.warning("Malformed stored value for %s, treating as absent: %s", key, e)
            return None

    def remove(self, key: str) -> bool:
        try:
            self._write("DELETE FROM kv WHERE key = ?", (key,))
            return True
        except sqlite3.Error as e:
            logger.warning("Failed to remove %s from storage: %s", key, e)
            return False

    def clear(self) -> bool:
        try:
            with self._lock:
                for table in ("kv", STORIES, ILLUSTRATIONS, CACHE):
                    self._conn.execute(f"DELETE FROM {table}")
                self._conn.commit()
            return True
        except sqlite3.Error as e:
            logger.warning("Failed to clear storage: %s", e)
            return False

    # ── Collections ───────────────────────────────────────────

    def _key_column(self, collection: str) -> str:
        try:
            return _KEY_COLUMNS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def _put_record(self, collection: str, record_id: str, record: dict) -> bool:
        column = self._key_column(collection)
        self._write(
            f"INSERT OR REPLACE INTO {collection} ({column}, data, saved_at) VALUES (?, ?, ?)",
            (record_id, json.dumps(record, ensure_ascii=False), now_ms()),
        )
        return True

    async def put_record(self, collection: str, record_id: str, record: dict) -> bool:
        try:
            return await asyncio.to_thread(self._put_record, collection, record_id, record)
        except (TypeError, ValueError) as e:
            logger.warning("Refusing %s/%s: %s", collection, record_id, e)
            return False
        except sqlite3.Error as e:
            logger.warning("Failed to save %s/%s: %s", collection, record_id, e)
            self._emit(e)
            return False

    async def get_record(self, collection: str, record_id: str) -> dict | None:
        try:
            column = self._key_column(collection)
            rows = await asyncio.to_thread(
                self._read, f"SELECT data FROM {collection} WHERE {column} = ?", (record_id,)
            )
            return json.loads(rows[0][0]) if rows else None
        except (sqlite3.Error, ValueError) as e:
            logger.warning("Failed to load %s/%s: %s", collection, record_id, e)
            return None

    async def all_records(self, collection: str) -> list[dict]:
        try:
            self._key_column(collection)
            rows = await asyncio.to_thread(
                self._read, f"SELECT data FROM {collection} ORDER BY saved_at DESC"
            )
        except (sqlite3.Error, ValueError) as e:
            logger.warning("Failed to list %s: %s", collection, e)
            return []

        records = []
        for (data,) in rows:
            try:
                records.append(json.loads(data))
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed %s record: %s", collection, e)
        return records

    async def delete_record(self, collection: str, record_id: str) -> bool:
        try:
            column = self._key_column(collection)
            await asyncio.to_thread(
                self._write, f"DELETE FROM {collection} WHERE {column} = ?", (record_id,)
            )
            return True
        except (sqlite3.Error, ValueError) as e:
            logger.warning("Failed to delete %s/%s: %s", collection, record_id, e)
            return False

    # ── Expiring cache ────────────────────────────────────────

    async def set_cache(self, key: str, data: Any, ttl_seconds: float = 3600) -> bool:
        created = now_ms()
        try:
            await asyncio.to_thread(
                self._write,
                "INSERT OR REPLACE INTO cache (key, data, expires_at, created_at) "
                "VALUES (?, ?, ?, ?)",
                (key, json.dumps(data, ensure_ascii=False), created + int(ttl_seconds * 1000), created),
            )
            return True
        except (TypeError, ValueError) as e:
            logger.warning("Value for cache %s is not serializable: %s", key, e)
            return False
        except sqlite3.Error as e:
            logger.warning("Failed to cache %s: %s", key, e)
            self._emit(e)
            return False

    async def get_cache(self, key: str) -> Any | None:
        try:
            rows = await asyncio.to_thread(
                self._read, "SELECT data, expires_at FROM cache WHERE key = ?", (key,)
            )
        except sqlite3.Error as e:
            logger.warning("Failed to read cache %s: %s", key, e)
            return None
        if not rows:
            return None

        data, expires_at = rows[0]
        if expires_at <= now_ms():
            await self.delete_cache(key)
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    async def delete_cache(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._write, "DELETE FROM cache WHERE key = ?", (key,))
            return True
        except sqlite3.Error as e:
            logger.warning("Failed to delete cache %s: %s", key, e)
            return False

    async def clear_cache(self) -> bool:
        try:
            await asyncio.to_thread(self._write, "DELETE FROM cache")
            logger.info("Cache cleared")
            return True
        except sqlite3.Error as e:
            logger.warning("Failed to clear cache: %s", e)
            return False

    async def usage(self) -> StorageUsage:
        count = 0
        try:
            for table in ("kv", STORIES, ILLUSTRATIONS, CACHE):
                rows = await asyncio.to_thread(self._read, f"SELECT COUNT(*) FROM {table}")
                count += rows[0][0]
        except sqlite3.Error as e:
            logger.warning("Failed to count stored items: %s", e)

        if self.path == MEMORY:
            return StorageUsage(item_count=count)

        db_path = Path(self.path)
        try:
            used = db_path.stat().st_size
            free = shutil.disk_usage(db_path.parent).free
        except OSError:
            return StorageUsage(item_count=count)
        return StorageUsage(used_bytes=used, quota_bytes=used + free, item_count=count)
