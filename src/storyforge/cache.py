"""In-memory memoization of remote text-generation results.

Bounded, insertion-ordered: once ``max_entries`` is reached the oldest-inserted
entry is evicted before a new key goes in (FIFO, not LRU; reads do not refresh
an entry's position).
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field

from storyforge.config import DEFAULT_NO_CACHE_MODES

logger = logging.getLogger(__name__)

KEY_HASH_LENGTH = 16


@dataclass
class CacheEntry:
    key: str
    value: str
    inserted_at: float = field(default_factory=time.time)


def get_cache_key(user_input: str, mode: str, context: str = "") -> str:
    """Deterministic short key for (mode, input, context)."""
    digest = hashlib.sha256(f"{user_input}\x1f{context}".encode("utf-8")).hexdigest()
    return f"{mode}_{digest[:KEY_HASH_LENGTH]}"


class ResponseCache:
    """Bounded FIFO cache of generated text keyed by :func:`get_cache_key`."""

    def __init__(
        self,
        max_entries: int = 50,
        no_cache_modes: Iterable[str] = DEFAULT_NO_CACHE_MODES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.no_cache_modes = frozenset(no_cache_modes)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def is_cacheable(self, mode: str) -> bool:
        return mode not in self.no_cache_modes

    def get_cache_key(self, user_input: str, mode: str, context: str = "") -> str:
        return get_cache_key(user_input, mode, context)

    def has(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def set(self, key: str, value: str) -> None:
        existing = self._entries.get(key)
        if existing is not None:
            # Overwrite in place: keeps the original insertion slot.
            existing.value = value
            return

        while len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted oldest cache entry %s", evicted)
        self._entries[key] = CacheEntry(key=key, value=value)

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
