"""Flat key-value store: one JSON text file per namespaced key.

The whole store behaves like browser local storage: a flat namespace, values
serialized to text, a fixed quota. Collections and the expiring cache are laid
out as ``<collection>~<id>`` keys inside the same namespace.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import quote

from storyforge.exceptions import StorageError
from storyforge.storage.base import (
    CACHE,
    COLLECTIONS,
    StorageErrorCallback,
    StorageUsage,
    now_ms,
)

logger = logging.getLogger(__name__)

_SEP = "~"


class FlatStore:
    """Synchronous flat store rooted at a directory."""

    def __init__(
        self,
        root: Path,
        prefix: str = "storyforge_",
        quota_bytes: int = 5 * 1024 * 1024,
        on_error: StorageErrorCallback | None = None,
    ) -> None:
        self.root = root
        self.prefix = prefix
        self.quota_bytes = quota_bytes
        self._on_error = on_error
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def name(self) -> str:
        return "flat"

    # ── Paths ─────────────────────────────────────────────────

    def _slug(self, key: str) -> str:
        # Percent-encoding is reversible, so distinct keys never share a file.
        return quote(key, safe="")

    def _path(self, key: str) -> Path:
        return self.root / f"{self.prefix}{self._slug(key)}.json"

    def _own_files(self, pattern: str = "*") -> list[Path]:
        return sorted(self.root.glob(f"{self.prefix}{pattern}.json"))

    def _used_bytes(self) -> int:
        total = 0
        for path in self._own_files():
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def _emit(self, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.warning("Storage error callback failed: %s", e)

    # ── Key-value ─────────────────────────────────────────────

    def save(self, key: str, value: Any) -> bool:
        path = self._path(key)
        try:
            text = json.dumps(value, ensure_ascii=False)
            size = len(text.encode("utf-8"))
            existing = path.stat().st_size if path.exists() else 0
            if self._used_bytes() - existing + size > self.quota_bytes:
                raise StorageError(f"storage quota exceeded while saving {key!r}")

            tmp = path.with_suffix(".tmp")
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
            return True
        except (TypeError, ValueError) as e:
            logger.warning("Value for %s is not serializable: %s", key, e)
            return False
        except (OSError, StorageError) as e:
            logger.warning("Failed to save %s to storage: %s", key, e)
            self._emit(e)
            return False

    def load(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to load %s from storage: %s", key, e)
            return None
        try:
            return json.loads(text) if text else None
        except json.JSONDecodeError as e:
            logger.warning("Malformed stored value for %s, treating as absent: %s", key, e)
            return None

    def remove(self, key: str) -> bool:
        try:
            self._path(key).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning("Failed to remove %s from storage: %s", key, e)
            return False

    def clear(self) -> bool:
        ok = True
        for path in self._own_files():
            try:
                path.unlink()
            except OSError as e:
                logger.warning("Failed to clear %s: %s", path.name, e)
                ok = False
        return ok

    # ── Collections ───────────────────────────────────────────

    def _record_key(self, collection: str, record_id: str) -> str:
        return f"{collection}{_SEP}{record_id}"

    def _known(self, collection: str) -> bool:
        if collection in COLLECTIONS:
            return True
        logger.warning("Unknown collection: %s", collection)
        return False

    async def put_record(self, collection: str, record_id: str, record: dict) -> bool:
        if not self._known(collection):
            return False
        return self.save(self._record_key(collection, record_id), record)

    async def get_record(self, collection: str, record_id: str) -> dict | None:
        if not self._known(collection):
            return None
        return self.load(self._record_key(collection, record_id))

    async def all_records(self, collection: str) -> list[dict]:
        if not self._known(collection):
            return []
        records = []
        for path in self._own_files(f"{collection}{_SEP}*"):
            try:
                records.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable record %s: %s", path.name, e)
        return records

    async def delete_record(self, collection: str, record_id: str) -> bool:
        if not self._known(collection):
            return False
        return self.remove(self._record_key(collection, record_id))

    # ── Expiring cache ────────────────────────────────────────

    async def set_cache(self, key: str, data: Any, ttl_seconds: float = 3600) -> bool:
        created = now_ms()
        entry = {
            "key": key,
            "data": data,
            "expires_at": created + int(ttl_seconds * 1000),
            "created_at": created,
        }
        return self.save(self._record_key(CACHE, key), entry)

    async def get_cache(self, key: str) -> Any | None:
        entry = self.load(self._record_key(CACHE, key))
        if not isinstance(entry, dict):
            return None
        if entry.get("expires_at", 0) <= now_ms():
            await self.delete_cache(key)
            return None
        return entry.get("data")

    async def delete_cache(self, key: str) -> bool:
        return self.remove(self._record_key(CACHE, key))

    async def clear_cache(self) -> bool:
        ok = True
        for path in self._own_files(f"{CACHE}{_SEP}*"):
            try:
                path.unlink()
            except OSError as e:
                logger.warning("Failed to clear cache entry %s: %s", path.name, e)
                ok = False
        return ok

    async def usage(self) -> StorageUsage:
        return StorageUsage(
            used_bytes=self._used_bytes(),
            quota_bytes=self.quota_bytes,
            item_count=len(self._own_files()),
        )
