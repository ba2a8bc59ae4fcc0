"""Exception hierarchy for StoryForge.

Remote failures carry an HTTP-like status so the retry layer can tell
transient server trouble apart from requests that will never succeed.
"""

from __future__ import annotations


class StoryForgeError(Exception):
    """Base exception for all StoryForge errors."""


class RemoteCallError(StoryForgeError):
    """A remote generation call failed.

    ``status`` is the HTTP-like status code, or ``None`` when the request never
    produced a response (connection reset, DNS failure, timeout).
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500 and self.status != 429


class ClientError(RemoteCallError):
    """Non-retryable 4xx failure (anything but 429)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(f"client error: {message}", status)


class ResponseFormatError(StoryForgeError):
    """A remote service answered with a body we could not understand."""


class StorageError(StoryForgeError):
    """Raised when persistence is full or unavailable."""


class ConfigError(StoryForgeError):
    """Raised when configuration is invalid or cannot be loaded."""
