"""Generator protocols and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass
class GenerationOptions:
    """Sampling options forwarded to the text model."""

    temperature: float = 0.8
    max_output_tokens: int = 500


@dataclass
class TextResult:
    """Response from a text generator."""

    text: str
    model: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ImageResult:
    """Outcome of one illustration request. Failure is data, not an exception."""

    success: bool
    image_url: str | None = None
    page_index: int = 0
    error: str | None = None


@runtime_checkable
class TextGenerator(Protocol):
    """Protocol that all text backends must implement.

    ``invoke`` raises :class:`~storyforge.exceptions.RemoteCallError` carrying an
    HTTP-like status on failure.
    """

    @property
    def name(self) -> str: ...

    async def invoke(self, prompt: str, options: GenerationOptions) -> TextResult:
        """Generate text for ``prompt``."""
        ...

    async def health_check(self) -> bool:
        """Check if the backend is reachable. Returns True if healthy."""
        ...


@runtime_checkable
class ImageGenerator(Protocol):
    """Protocol for illustration backends. ``invoke`` never raises."""

    @property
    def name(self) -> str: ...

    async def invoke(self, prompt: str, page_index: int) -> ImageResult:
        """Generate one illustration."""
        ...
