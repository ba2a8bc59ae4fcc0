"""Error reporting: user-facing messages, local error log, remote forwarding.

Three jobs:
1. ``classify()`` turns a technical error into one friendly sentence.
2. ``log()`` appends a structured record to a bounded local log and, when
   online, forwards it to a collector in the background. Forwarding never
   raises and never blocks the caller.
3. ``wrap()`` decorates an async operation: log, optionally notify (with a
   retry hook for transient failures), then re-raise.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import sys
import traceback
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from storyforge.exceptions import RemoteCallError, StorageError
from storyforge.retry import is_retryable

if TYPE_CHECKING:
    from storyforge.storage.base import PersistenceBackend

logger = logging.getLogger(__name__)

ERRORS_KEY = "errors"

MSG_CONNECTION = "Connection error. Please check your internet and try again."
MSG_TIMEOUT = "Request timed out. Please try again."
MSG_RATE_LIMITED = "Too many requests. Please wait a moment before trying again."
MSG_AUTH = "Authentication error. Please try again."
MSG_QUOTA = "Service quota exceeded. Please try again later."
MSG_STORAGE = "Storage is full. Please clear some space and try again."
MSG_GENERIC = "Something went wrong. Please try again."
MSG_STORAGE_BANNER = "Storage is full. Some data may not be saved."

# Ordered, first match wins. Matched against "<message> <status>" lower-cased.
CLASSIFICATION_RULES: list[tuple[tuple[str, ...], str]] = [
    (("network", "fetch", "connection", "connect"), MSG_CONNECTION),
    (("timeout", "timed out"), MSG_TIMEOUT),
    (("rate limit", "429"), MSG_RATE_LIMITED),
    (("api key", "401", "403", "unauthorized", "forbidden"), MSG_AUTH),
    (("quota",), MSG_QUOTA),
    (("storage",), MSG_STORAGE),
]


@runtime_checkable
class Notifier(Protocol):
    """Surface for toast/banner style notifications."""

    def show(
        self,
        message: str,
        *,
        kind: str = "error",
        retry: Callable[[], Awaitable[Any]] | None = None,
        persistent: bool = False,
    ) -> None: ...


@runtime_checkable
class ErrorCollector(Protocol):
    """Remote sink for error records."""

    async def send(self, record: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Notifier that only writes to the log; the default when no UI is attached."""

    def show(
        self,
        message: str,
        *,
        kind: str = "error",
        retry: Callable[[], Awaitable[Any]] | None = None,
        persistent: bool = False,
    ) -> None:
        level = logging.ERROR if kind == "error" else logging.WARNING
        logger.log(level, "[%s] %s%s", kind, message, " (retry available)" if retry else "")


def _error_text(error: BaseException) -> str:
    text = str(error)
    if isinstance(error, RemoteCallError) and error.status is not None:
        text = f"{text} {error.status}"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) and "timeout" not in text.lower():
        text = f"{text} timeout"
    if isinstance(error, StorageError) and "storage" not in text.lower():
        text = f"{text} storage"
    return text.lower()


def classify(error: BaseException | None) -> str:
    """Map an error to a user-facing sentence."""
    if error is None:
        return MSG_GENERIC
    text = _error_text(error)
    for needles, message in CLASSIFICATION_RULES:
        if any(needle in text for needle in needles):
            return message
    return MSG_GENERIC


def _agent() -> str:
    return f"storyforge python/{platform.python_version()} ({sys.platform})"


class ErrorReporter:
    """Logs errors locally and remotely and turns them into notifications."""

    def __init__(
        self,
        backend: PersistenceBackend | None = None,
        *,
        notifier: Notifier | None = None,
        collector: ErrorCollector | None = None,
        is_online: Callable[[], bool] | None = None,
        max_logged: int = 50,
    ) -> None:
        self._backend = backend
        self.notifier = notifier or LoggingNotifier()
        self.collector = collector
        self._is_online = is_online or (lambda: True)
        self.max_logged = max_logged
        self.storage_degraded = False
        self._pending: set[asyncio.Task] = set()
        self._memory_log: list[dict[str, Any]] = []

    # ── Classification ────────────────────────────────────────

    def classify(self, error: BaseException | None) -> str:
        return classify(error)

    # ── Logging ───────────────────────────────────────────────

    def _online(self) -> bool:
        try:
            return bool(self._is_online())
        except Exception:
            return False

    def log(
        self,
        error: BaseException | None,
        context: str = "",
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record ``error`` locally and forward it if online. Never raises."""
        online = self._online()
        record: dict[str, Any] = {
            "message": str(error) if error is not None and str(error) else "Unknown error",
            "type": type(error).__name__ if error is not None else None,
            "stack": (
                "".join(traceback.format_exception(type(error), error, error.__traceback__))
                if error is not None
                else ""
            ),
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "agent": _agent(),
            "online": online,
            **(extra or {}),
        }
        logger.error("Error logged [%s]: %s", context or "-", record["message"])

        self._store(record)
        if online and self.collector is not None:
            self._forward(record)
        return record

    def _store(self, record: dict[str, Any]) -> None:
        errors = self.errors()
        errors.append(record)
        if len(errors) > self.max_logged:
            del errors[: len(errors) - self.max_logged]

        if self._backend is not None and self._backend.save(ERRORS_KEY, errors):
            self._memory_log = []
            return
        self._memory_log = errors
        if self._backend is not None:
            logger.warning("Could not store error locally; kept in memory")

    def _forward(self, record: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; error record not forwarded")
            return
        task = loop.create_task(self._send(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, record: dict[str, Any]) -> None:
        try:
            await self.collector.send(record)
        except Exception as e:
            logger.debug("Could not send error to collector: %s", e)

    async def flush(self) -> None:
        """Wait for in-flight forwards (tests, shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def errors(self) -> list[dict[str, Any]]:
        # The in-memory log only fills up while the backend refuses writes.
        if self._memory_log:
            return list(self._memory_log)
        if self._backend is not None:
            stored = self._backend.load(ERRORS_KEY)
            if isinstance(stored, list):
                return stored
        return list(self._memory_log)

    def clear_errors(self) -> bool:
        self._memory_log = []
        if self._backend is None:
            return True
        return self._backend.remove(ERRORS_KEY)

    # ── Storage signal ────────────────────────────────────────

    def handle_storage_error(self, error: Exception) -> None:
        """Persistent warning; write-dependent features stay off until resolved."""
        first = not self.storage_degraded
        self.storage_degraded = True
        if first:
            self.notifier.show(MSG_STORAGE_BANNER, kind="warning", persistent=True)
        logger.warning("Storage error: %s", error)

    def storage_resolved(self) -> None:
        if self.storage_degraded:
            logger.info("Storage available again")
        self.storage_degraded = False

    # ── Wrapping ──────────────────────────────────────────────

    def wrap(
        self,
        operation: Callable[..., Awaitable[Any]],
        context: str = "",
        *,
        notify: bool = True,
        retryable: bool = True,
    ) -> Callable[..., Awaitable[Any]]:
        """Return ``operation`` with logging + notification; errors still propagate."""

        async def wrapped(*args: Any, **kwargs: Any) -> Any:
            try:
                return await operation(*args, **kwargs)
            except Exception as e:
                self.log(e, context)
                if notify:
                    retry = None
                    if retryable and is_retryable(e):
                        retry = lambda: wrapped(*args, **kwargs)  # noqa: E731
                    self.notifier.show(self.classify(e), kind="error", retry=retry)
                raise

        wrapped.__name__ = getattr(operation, "__name__", "wrapped")
        wrapped.__doc__ = getattr(operation, "__doc__", None)
        return wrapped
