"""Central application state with subscribers and bounded undo/redo.

One dict, one owner. Every mutation goes through :class:`StateManager` so the
history buffer and subscribers always see it.

History holds snapshots of every state the record has been in; ``history_index``
points at the snapshot equal to the current state. A ``set()`` after ``undo()``
drops the redo tail (no branching). Once the buffer is full the oldest snapshot
falls off the front and the index shifts with it.

No internal locking: overlapping async callbacks that ``set()`` the same keys
resolve as last-write-wins inside the event loop. Callers must not interleave
conflicting updates.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from storyforge.storage.base import PersistenceBackend

logger = logging.getLogger(__name__)

STATE_KEY = "state"
DEFAULT_MAX_HISTORY = 50

Subscriber = Callable[[Any], None]

_MISSING = object()


def default_progress() -> dict[str, int]:
    return {
        "xp": 0,
        "level": 1,
        "total_words": 0,
        "stories_completed": 0,
        "segments_completed": 0,
    }


def default_state() -> dict[str, Any]:
    return {
        "active_user": "",
        "active_draft": "",
        "revision_count": 0,
        "page": "welcome",
        "video_writing": {
            "is_active": False,
            "selected_video": None,
            "sections": [],
            "current_segment": 0,
        },
        "user_progress": default_progress(),
        "guild_draft": "",
        "guild_revision_count": 0,
        "illustrated_pages": [],
        "book_page_index": 0,
    }


class StateManager:
    """Owns the application state record."""

    def __init__(
        self,
        backend: PersistenceBackend | None = None,
        *,
        state_key: str = STATE_KEY,
        max_history: int = DEFAULT_MAX_HISTORY,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._backend = backend
        self._state_key = state_key
        self.max_history = max_history
        self.persistence_available = backend is not None

        self._state: dict[str, Any] = default_state()
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._history: list[dict[str, Any]] = [copy.deepcopy(self._state)]
        self._history_index = 0

    # ── Reads ─────────────────────────────────────────────────

    def get(self, path: str | None = None, default: Any = None) -> Any:
        """Look up ``path`` (dot-delimited); ``None``/absent → ``default``.

        Containers come back as deep copies; with no path, the whole record.
        """
        if not path:
            return copy.deepcopy(self._state)

        value: Any = self._state
        for segment in path.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(segment, _MISSING)
            if value is _MISSING:
                return default
        if isinstance(value, (dict, list)):
            return copy.deepcopy(value)
        return value

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._state)

    @property
    def history_index(self) -> int:
        return self._history_index

    def history_info(self) -> dict[str, Any]:
        return {
            "current": self._history_index,
            "total": len(self._history),
            "can_undo": self.can_undo(),
            "can_redo": self.can_redo(),
        }

    # ── Writes ────────────────────────────────────────────────

    def set(self, updates: dict[str, Any]) -> None:
        """Shallow-merge ``updates`` into the top level.

        A key that names a sub-dict replaces that whole sub-dict.
        """
        self._state = {**self._state, **copy.deepcopy(updates)}
        self._record()
        self._notify(list(updates))
        self._persist()

    def set_nested(self, path: str, value: Any) -> None:
        """Set a dot-delimited path, creating intermediate dicts as needed."""
        segments = path.split(".")
        last = segments.pop()

        target = self._state
        for segment in segments:
            child = target.get(segment)
            if not isinstance(child, dict):
                child = {}
                target[segment] = child
            target = child
        target[last] = copy.deepcopy(value)

        self._record()
        self._notify([segments[0] if segments else last])
        self._persist()

    def subscribe(self, key: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for changes to top-level ``key``.

        Returns a function that removes this registration.
        """
        callbacks = self._subscribers.setdefault(key, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    # ── History ───────────────────────────────────────────────

    def can_undo(self) -> bool:
        return self._history_index > 0

    def can_redo(self) -> bool:
        return self._history_index < len(self._history) - 1

    def undo(self) -> bool:
        if not self.can_undo():
            return False
        self._history_index -= 1
        self._state = copy.deepcopy(self._history[self._history_index])
        self._notify_all()
        self._persist()
        return True

    def redo(self) -> bool:
        if not self.can_redo():
            return False
        self._history_index += 1
        self._state = copy.deepcopy(self._history[self._history_index])
        self._notify_all()
        self._persist()
        return True

    # ── Lifecycle ─────────────────────────────────────────────

    def reset(self) -> None:
        """Back to defaults, keeping the active user and their progress."""
        fresh = default_state()
        fresh["active_user"] = self._state.get("active_user", "")
        fresh["user_progress"] = copy.deepcopy(
            self._state.get("user_progress") or default_progress()
        )
        self._state = fresh
        self._record()
        self._notify_all()
        self._persist()

    def clear(self) -> None:
        """Wipe state, history and the persisted copy."""
        self._state = default_state()
        self._history = [copy.deepcopy(self._state)]
        self._history_index = 0
        self._notify_all()
        if self._backend is not None:
            self._backend.remove(self._state_key)

    def load(self) -> bool:
        """Merge the persisted snapshot (if any) over the current state."""
        if self._backend is None:
            return False
        saved = self._backend.load(self._state_key)
        if not isinstance(saved, dict):
            return False
        self._state = {**self._state, **saved}
        self._history = [copy.deepcopy(self._state)]
        self._history_index = 0
        self._notify_all()
        return True

    # ── Internals ─────────────────────────────────────────────

    def _record(self) -> None:
        # Drop the redo tail, then append the new current state.
        del self._history[self._history_index + 1 :]
        self._history.append(copy.deepcopy(self._state))
        self._history_index += 1

        if len(self._history) > self.max_history:
            self._history.pop(0)
            self._history_index -= 1

    def _dispatch(self, key: str) -> None:
        value = self._state.get(key)
        for callback in list(self._subscribers.get(key, [])):
            try:
                callback(copy.deepcopy(value))
            except Exception as e:
                logger.error("Error in subscriber for key %r: %s", key, e)

    def _notify(self, keys: list[str]) -> None:
        for key in keys:
            self._dispatch(key)

    def _notify_all(self) -> None:
        for key in list(self._subscribers):
            self._dispatch(key)

    def _persist(self) -> None:
        if self._backend is None:
            return
        if self._backend.save(self._state_key, self._state):
            if not self.persistence_available:
                logger.info("State persistence restored")
            self.persistence_available = True
            return
        if self.persistence_available:
            logger.warning("Could not persist state; continuing in memory only")
        self.persistence_available = False
