"""Pick a persistence backend at startup by capability detection."""

from __future__ import annotations

import logging

from storyforge.config import StorageConfig
from storyforge.storage.base import PersistenceBackend, StorageErrorCallback
from storyforge.storage.flat import FlatStore

logger = logging.getLogger(__name__)

DB_FILENAME = "storyforge.db"


def _open_collections(config: StorageConfig, on_error: StorageErrorCallback | None):
    from storyforge.storage.collections import CollectionStore

    return CollectionStore(config.root / DB_FILENAME, on_error=on_error)


def open_backend(
    config: StorageConfig,
    on_error: StorageErrorCallback | None = None,
) -> PersistenceBackend:
    """Return the configured backend; ``auto`` prefers collections, falls back to flat."""
    if config.backend == "flat":
        return FlatStore(config.root, config.prefix, config.quota_bytes, on_error=on_error)

    if config.backend == "collections":
        return _open_collections(config, on_error)

    try:
        backend = _open_collections(config, on_error)
        logger.info("Using collection store at %s", config.root / DB_FILENAME)
        return backend
    except Exception as e:
        logger.warning("Collection store not available, using flat store fallback: %s", e)
        return FlatStore(config.root, config.prefix, config.quota_bytes, on_error=on_error)
