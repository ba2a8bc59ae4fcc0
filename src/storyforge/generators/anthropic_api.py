"""Anthropic API text generator: direct SDK calls, no proxy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from storyforge.exceptions import RemoteCallError, ResponseFormatError
from storyforge.generators.base import GenerationOptions, TextResult

logger = logging.getLogger(__name__)


@dataclass
class AnthropicTextGenerator:
    """Text generation via the `anthropic` SDK."""

    model: str = "claude-sonnet-4-5-20250929"
    timeout: int = 120
    client: Any = None

    def __post_init__(self) -> None:
        if self.client is not None:
            return
        try:
            import anthropic

            self.client = anthropic.Anthropic(timeout=self.timeout)
        except ImportError:
            raise ImportError(
                "anthropic package required. Install with: pip install 'storyforge[api]'"
            )

    @property
    def name(self) -> str:
        return "anthropic_api"

    async def invoke(self, prompt: str, options: GenerationOptions) -> TextResult:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": options.max_output_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }

        try:
            response = await asyncio.to_thread(self.client.messages.create, **kwargs)
        except Exception as e:
            # SDK status errors carry status_code; connection errors do not.
            status = getattr(e, "status_code", None)
            logger.error("Anthropic API error (status=%s): %s", status, e)
            raise RemoteCallError(f"Anthropic API error: {e}", status) from e

        if not response.content:
            raise ResponseFormatError("Anthropic API returned no content")

        return TextResult(
            text=response.content[0].text,
            model=getattr(response, "model", None),
        )

    async def health_check(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self.client.messages.create,
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return bool(response.content)
        except Exception:
            return False
