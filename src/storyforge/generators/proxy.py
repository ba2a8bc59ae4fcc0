"""HTTP clients for the StoryForge proxy server.

The proxy holds the API keys and forwards to the generative service:
    POST /api/storyforge-ai      text generation
    POST /api/generate-image     one illustration per call
    POST /api/analytics/error    error collector
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from storyforge.exceptions import RemoteCallError, ResponseFormatError
from storyforge.generators.base import GenerationOptions, ImageResult, TextResult

logger = logging.getLogger(__name__)

TEXT_PATH = "/api/storyforge-ai"
IMAGE_PATH = "/api/generate-image"
ERROR_PATH = "/api/analytics/error"


class _ProxyClient:
    """Shared aiohttp session handling."""

    def __init__(self, base_url: str, timeout: int = 60) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def extract_text(data: Any) -> str:
    """Pull generated text from either ``{"result": ...}`` or a ``candidates`` body."""
    if isinstance(data, dict):
        if isinstance(data.get("result"), str):
            return data["result"]
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            pass
    raise ResponseFormatError("Unexpected response body from text service")


class ProxyTextGenerator(_ProxyClient):
    """Text generation through the proxy's generative-API passthrough."""

    @property
    def name(self) -> str:
        return "proxy"

    async def invoke(self, prompt: str, options: GenerationOptions) -> TextResult:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_output_tokens,
            },
        }
        session = self._get_session()
        try:
            async with session.post(self._url(TEXT_PATH), json=body) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    logger.warning("Text service error %d: %s", resp.status, detail[:200])
                    raise RemoteCallError(f"API error: {resp.status}", resp.status)
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise ResponseFormatError(f"Text service returned invalid JSON: {e}") from e
        except asyncio.TimeoutError as e:
            # Before ClientError: aiohttp's timeout errors subclass both.
            raise RemoteCallError("Request timeout") from e
        except aiohttp.ClientError as e:
            raise RemoteCallError(f"Network error: {e}") from e

        return TextResult(text=extract_text(data))

    async def health_check(self) -> bool:
        session = self._get_session()
        try:
            async with session.get(self._url("/health")) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False


class ProxyImageGenerator(_ProxyClient):
    """Illustration requests; failures come back as ``success=False``."""

    @property
    def name(self) -> str:
        return "proxy"

    async def invoke(self, prompt: str, page_index: int) -> ImageResult:
        session = self._get_session()
        try:
            async with session.post(
                self._url(IMAGE_PATH),
                json={"prompt": prompt, "pageNumber": page_index + 1},
            ) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400 or not isinstance(data, dict):
                    return ImageResult(
                        success=False, page_index=page_index, error=f"HTTP {resp.status}"
                    )
        except Exception as e:
            logger.warning("Image generation failed for page %d: %s", page_index + 1, e)
            return ImageResult(success=False, page_index=page_index, error=str(e))

        success = bool(data.get("success"))
        return ImageResult(
            success=success,
            image_url=data.get("imageUrl") if success else None,
            page_index=page_index,
            error=None if success else data.get("error", "image generation failed"),
        )


class HttpErrorCollector(_ProxyClient):
    """Posts error records to the proxy's analytics endpoint."""

    async def send(self, record: dict[str, Any]) -> None:
        session = self._get_session()
        async with session.post(self._url(ERROR_PATH), json=record) as resp:
            if resp.status >= 400:
                logger.debug("Error collector answered %d", resp.status)
