"""Tests for the proxy and Anthropic text/image generators."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils
from unittest.mock import MagicMock

from storyforge.exceptions import RemoteCallError, ResponseFormatError
from storyforge.generators.anthropic_api import AnthropicTextGenerator
from storyforge.generators.base import GenerationOptions, ImageGenerator, TextGenerator
from storyforge.generators.proxy import (
    ERROR_PATH,
    IMAGE_PATH,
    TEXT_PATH,
    HttpErrorCollector,
    ProxyImageGenerator,
    ProxyTextGenerator,
    extract_text,
)


class FakeProxy:
    """Scripted stand-in for the proxy server."""

    def __init__(self):
        self.text_replies: list[tuple[int, object]] = []
        self.image_replies: dict[int, tuple[int, object]] = {}
        self.text_requests: list[dict] = []
        self.image_requests: list[dict] = []
        self.error_records: list[dict] = []
        self.delay = 0.0
        self.base_url = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(TEXT_PATH, self._text)
        app.router.add_post(IMAGE_PATH, self._image)
        app.router.add_post(ERROR_PATH, self._error)
        app.router.add_get("/health", self._health)
        return app

    @staticmethod
    def _reply(status: int, body: object) -> web.Response:
        if isinstance(body, str):
            return web.Response(status=status, text=body)
        return web.json_response(body, status=status)

    async def _text(self, request: web.Request) -> web.Response:
        self.text_requests.append(await request.json())
        if self.delay:
            await asyncio.sleep(self.delay)
        status, body = self.text_replies.pop(0) if self.text_replies else (200, {"result": "ok"})
        return self._reply(status, body)

    async def _image(self, request: web.Request) -> web.Response:
        payload = await request.json()
        self.image_requests.append(payload)
        status, body = self.image_replies.get(
            payload["pageNumber"],
            (200, {"success": True, "imageUrl": f"https://img/{payload['pageNumber']}.png"}),
        )
        return self._reply(status, body)

    async def _error(self, request: web.Request) -> web.Response:
        self.error_records.append(await request.json())
        return web.json_response({"ok": True})

    async def _health(self, request: web.Request) -> web.Response:
        return web.Response(text="ok")


@pytest_asyncio.fixture
async def proxy():
    fake = FakeProxy()
    server = test_utils.TestServer(fake.app())
    await server.start_server()
    fake.base_url = str(server.make_url("")).rstrip("/")
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def text_generator(proxy: FakeProxy):
    generator = ProxyTextGenerator(proxy.base_url, timeout=5)
    yield generator
    await generator.close()


@pytest_asyncio.fixture
async def image_generator(proxy: FakeProxy):
    generator = ProxyImageGenerator(proxy.base_url, timeout=5)
    yield generator
    await generator.close()


class TestExtractText:
    def test_result_field(self):
        assert extract_text({"result": "Nice story!"}) == "Nice story!"

    def test_candidates_field(self):
        body = {"candidates": [{"content": {"parts": [{"text": "Well done"}]}}]}
        assert extract_text(body) == "Well done"

    @pytest.mark.parametrize("body", [{}, {"candidates": []}, [], "text", None])
    def test_unexpected(self, body):
        with pytest.raises(ResponseFormatError):
            extract_text(body)


class TestProxyTextGenerator:
    def test_satisfies_protocol(self):
        assert isinstance(ProxyTextGenerator("http://localhost"), TextGenerator)

    @pytest.mark.asyncio
    async def test_invoke(self, proxy: FakeProxy, text_generator: ProxyTextGenerator):
        proxy.text_replies.append((200, {"result": "You used great verbs!"}))

        result = await text_generator.invoke("Summarize", GenerationOptions(0.5, 1500))

        assert result.text == "You used great verbs!"
        sent = proxy.text_requests[0]
        assert sent["contents"][0]["parts"][0]["text"] == "Summarize"
        assert sent["generationConfig"] == {"temperature": 0.5, "maxOutputTokens": 1500}

    @pytest.mark.asyncio
    async def test_candidates_body(self, proxy: FakeProxy, text_generator: ProxyTextGenerator):
        proxy.text_replies.append(
            (200, {"candidates": [{"content": {"parts": [{"text": "Lovely"}]}}]})
        )
        result = await text_generator.invoke("p", GenerationOptions())
        assert result.text == "Lovely"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 429, 500, 503])
    async def test_http_error_carries_status(
        self, proxy: FakeProxy, text_generator: ProxyTextGenerator, status: int
    ):
        proxy.text_replies.append((status, {"error": "nope"}))
        with pytest.raises(RemoteCallError) as excinfo:
            await text_generator.invoke("p", GenerationOptions())
        assert excinfo.value.status == status
        assert str(excinfo.value) == f"API error: {status}"

    @pytest.mark.asyncio
    async def test_invalid_json(self, proxy: FakeProxy, text_generator: ProxyTextGenerator):
        proxy.text_replies.append((200, "<html>gateway</html>"))
        with pytest.raises(ResponseFormatError):
            await text_generator.invoke("p", GenerationOptions())

    @pytest.mark.asyncio
    async def test_timeout(self, proxy: FakeProxy):
        proxy.delay = 1.0
        generator = ProxyTextGenerator(proxy.base_url, timeout=0.2)
        try:
            with pytest.raises(RemoteCallError, match="timeout") as excinfo:
                await generator.invoke("p", GenerationOptions())
            assert excinfo.value.status is None
        finally:
            await generator.close()

    @pytest.mark.asyncio
    async def test_network_error(self):
        generator = ProxyTextGenerator("http://127.0.0.1:1", timeout=5)
        try:
            with pytest.raises(RemoteCallError, match="Network error") as excinfo:
                await generator.invoke("p", GenerationOptions())
            assert excinfo.value.status is None
        finally:
            await generator.close()

    @pytest.mark.asyncio
    async def test_health_check(self, text_generator: ProxyTextGenerator):
        assert await text_generator.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_unreachable(self):
        generator = ProxyTextGenerator("http://127.0.0.1:1", timeout=5)
        try:
            assert await generator.health_check() is False
        finally:
            await generator.close()

    @pytest.mark.asyncio
    async def test_session_reused_and_closed(self, text_generator: ProxyTextGenerator):
        await text_generator.invoke("p", GenerationOptions())
        session = text_generator._session
        await text_generator.invoke("p", GenerationOptions())
        assert text_generator._session is session

        await text_generator.close()
        assert session.closed


class TestProxyImageGenerator:
    def test_satisfies_protocol(self):
        assert isinstance(ProxyImageGenerator("http://localhost"), ImageGenerator)

    @pytest.mark.asyncio
    async def test_success(self, proxy: FakeProxy, image_generator: ProxyImageGenerator):
        result = await image_generator.invoke("a fox in a forest", 0)

        assert result.success is True
        assert result.image_url == "https://img/1.png"
        assert result.page_index == 0
        assert proxy.image_requests[0] == {"prompt": "a fox in a forest", "pageNumber": 1}

    @pytest.mark.asyncio
    async def test_reported_failure(self, proxy: FakeProxy, image_generator: ProxyImageGenerator):
        proxy.image_replies[3] = (200, {"success": False, "error": "safety filter"})
        result = await image_generator.invoke("p", 2)
        assert result.success is False
        assert result.image_url is None
        assert result.error == "safety filter"

    @pytest.mark.asyncio
    async def test_http_failure(self, proxy: FakeProxy, image_generator: ProxyImageGenerator):
        proxy.image_replies[1] = (500, {"error": "boom"})
        result = await image_generator.invoke("p", 0)
        assert result.success is False
        assert result.error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_never_raises(self):
        generator = ProxyImageGenerator("http://127.0.0.1:1", timeout=5)
        try:
            result = await generator.invoke("p", 4)
        finally:
            await generator.close()
        assert result.success is False
        assert result.page_index == 4
        assert result.error


class TestHttpErrorCollector:
    @pytest.mark.asyncio
    async def test_send(self, proxy: FakeProxy):
        collector = HttpErrorCollector(proxy.base_url)
        try:
            await collector.send({"message": "boom", "context": "generate"})
        finally:
            await collector.close()
        assert proxy.error_records == [{"message": "boom", "context": "generate"}]


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def _response(text="Great job!", model="claude-test"):
    return SimpleNamespace(content=[SimpleNamespace(text=text)], model=model)


class TestAnthropicTextGenerator:
    def test_satisfies_protocol(self):
        assert isinstance(AnthropicTextGenerator(client=MagicMock()), TextGenerator)

    @pytest.mark.asyncio
    async def test_invoke(self):
        client = MagicMock()
        client.messages.create.return_value = _response()
        generator = AnthropicTextGenerator(model="claude-test", client=client)

        result = await generator.invoke("Summarize", GenerationOptions(0.3, 1500))

        assert result.text == "Great job!"
        assert result.model == "claude-test"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["max_tokens"] == 1500
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"] == [{"role": "user", "content": "Summarize"}]

    @pytest.mark.asyncio
    async def test_status_error_mapped(self):
        client = MagicMock()
        client.messages.create.side_effect = StatusError("overloaded", 529)
        generator = AnthropicTextGenerator(client=client)

        with pytest.raises(RemoteCallError) as excinfo:
            await generator.invoke("p", GenerationOptions())
        assert excinfo.value.status == 529
        assert not excinfo.value.is_client_error

    @pytest.mark.asyncio
    async def test_connection_error_has_no_status(self):
        client = MagicMock()
        client.messages.create.side_effect = ConnectionError("reset")
        generator = AnthropicTextGenerator(client=client)

        with pytest.raises(RemoteCallError) as excinfo:
            await generator.invoke("p", GenerationOptions())
        assert excinfo.value.status is None

    @pytest.mark.asyncio
    async def test_empty_content(self):
        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(content=[], model="m")
        generator = AnthropicTextGenerator(client=client)

        with pytest.raises(ResponseFormatError):
            await generator.invoke("p", GenerationOptions())

    @pytest.mark.asyncio
    async def test_health_check(self):
        client = MagicMock()
        client.messages.create.return_value = _response()
        assert await AnthropicTextGenerator(client=client).health_check() is True

        client.messages.create.side_effect = ConnectionError("down")
        assert await AnthropicTextGenerator(client=client).health_check() is False
