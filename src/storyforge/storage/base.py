"""Persistence backend protocol and shared types."""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

# Callback fired when a write fails (the "storage error" signal for the UI layer)
StorageErrorCallback = Callable[[Exception], None]

STORIES = "stories"
ILLUSTRATIONS = "illustrations"
CACHE = "cache"
# Record collections; the expiring cache has its own operations.
COLLECTIONS = (STORIES, ILLUSTRATIONS)


def now_ms() -> int:
    return int(time.time() * 1000)


def format_bytes(size: int) -> str:
    """Human-readable byte count, e.g. ``1.5 KB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / 1024**i, 2):g} {units[i]}"


@dataclass
class StorageUsage:
    """Storage usage report. ``None`` fields mean the runtime cannot tell."""

    used_bytes: int | None = None
    quota_bytes: int | None = None
    item_count: int | None = None

    @property
    def known(self) -> bool:
        return self.used_bytes is not None and bool(self.quota_bytes)

    @property
    def percentage(self) -> int | None:
        if not self.known:
            return None
        return round(self.used_bytes / self.quota_bytes * 100)

    def is_near_limit(self, threshold: float = 0.8) -> bool:
        if not self.known:
            return False
        return self.used_bytes > self.quota_bytes * threshold

    def to_dict(self) -> dict[str, Any]:
        if not self.known:
            return {
                "used": "unknown",
                "available": "unknown",
                "percentage": "unknown",
                "item_count": self.item_count if self.item_count is not None else "unknown",
            }
        return {
            "used": format_bytes(self.used_bytes),
            "available": format_bytes(self.quota_bytes),
            "used_bytes": self.used_bytes,
            "available_bytes": self.quota_bytes,
            "percentage": self.percentage,
            "item_count": self.item_count if self.item_count is not None else "unknown",
        }


@runtime_checkable
class PersistenceBackend(Protocol):
    """Contract shared by every persistence backend.

    Nothing here raises: failures return ``None``/``False`` and are reported
    through the backend's storage-error callback.
    """

    @property
    def name(self) -> str: ...

    # ── Key-value ─────────────────────────────────────────────

    def save(self, key: str, value: Any) -> bool: ...

    def load(self, key: str) -> Any | None: ...

    def remove(self, key: str) -> bool: ...

    def clear(self) -> bool: ...

    # ── Collections ───────────────────────────────────────────

    async def put_record(self, collection: str, record_id: str, record: dict) -> bool: ...

    async def get_record(self, collection: str, record_id: str) -> dict | None: ...

    async def all_records(self, collection: str) -> list[dict]: ...

    async def delete_record(self, collection: str, record_id: str) -> bool: ...

    # ── Expiring cache ────────────────────────────────────────

    async def set_cache(self, key: str, data: Any, ttl_seconds: float = 3600) -> bool: ...

    async def get_cache(self, key: str) -> Any | None: ...

    async def delete_cache(self, key: str) -> bool: ...

    async def clear_cache(self) -> bool: ...

    async def usage(self) -> StorageUsage: ...
