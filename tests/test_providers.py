"""Tests for inference providers.

Upstream HTTP is mocked with respx; streamed bodies are literal SSE text.
"""

import json

import httpx
import pytest
import pytest_asyncio

from studygate.app.exceptions import ProviderError
from studygate.app.providers import (
    AnthropicProvider,
    MockProvider,
    OpenAIProvider,
    create_provider,
)
from studygate.app.providers.base import CompletionRequest

ANTHROPIC_URL = "https://api.anthropic.test/v1/messages"
OPENAI_URL = "https://api.openai.test/v1/chat/completions"


def sse(*events) -> str:
    """Encode events as an SSE body (dicts as JSON, strings verbatim)."""
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines)


def text_delta(text: str) -> dict:
    return {
        "type": "content_block_delta",
        "index": 0,
        "delta": {"type": "text_delta", "text": text},
    }


@pytest_asyncio.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def chat_request():
    return CompletionRequest(
        messages=[{"role": "user", "content": "What is step 1?"}],
        system="You are a tutor.",
        max_tokens=256,
    )


async def collect(provider, request):
    return [fragment async for fragment in provider.stream_text(request)]


class TestAnthropicProvider:
    @pytest.fixture
    def provider(self, http_client):
        return AnthropicProvider(
            base_url="https://api.anthropic.test/",
            api_key="sk-ant-test",
            http_client=http_client,
            model="claude-test",
        )

    @pytest.mark.asyncio
    async def test_streams_text_deltas(self, provider, chat_request, respx_mock):
        body = (
            "event: message_start\n"
            + sse(
                {"type": "message_start", "message": {"id": "msg_1"}},
                {"type": "content_block_start", "index": 0},
                text_delta("Start "),
                {"type": "ping"},
                text_delta("with the data."),
                {"type": "content_block_stop", "index": 0},
                {"type": "message_stop"},
            )
        )
        route = respx_mock.post(ANTHROPIC_URL).mock(
            return_value=httpx.Response(200, text=body)
        )

        fragments = await collect(provider, chat_request)

        assert fragments == ["Start ", "with the data."]
        sent = route.calls.last.request
        assert sent.headers["x-api-key"] == "sk-ant-test"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        payload = json.loads(sent.content)
        assert payload["stream"] is True
        assert payload["system"] == "You are a tutor."
        assert payload["model"] == "claude-test"
        assert payload["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_error_event_raises(self, provider, chat_request, respx_mock):
        body = sse(
            text_delta("Par"),
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        respx_mock.post(ANTHROPIC_URL).mock(return_value=httpx.Response(200, text=body))

        fragments = []
        with pytest.raises(ProviderError, match="overloaded_error"):
            async for fragment in provider.stream_text(chat_request):
                fragments.append(fragment)

        assert fragments == ["Par"]

    @pytest.mark.asyncio
    async def test_missing_message_stop_raises(self, provider, chat_request, respx_mock):
        respx_mock.post(ANTHROPIC_URL).mock(
            return_value=httpx.Response(200, text=sse(text_delta("cut")))
        )

        with pytest.raises(ProviderError, match="message_stop"):
            await collect(provider, chat_request)

    @pytest.mark.asyncio
    async def test_http_error_status(self, provider, chat_request, respx_mock):
        respx_mock.post(ANTHROPIC_URL).mock(
            return_value=httpx.Response(401, json={"error": {"message": "bad key"}})
        )

        with pytest.raises(ProviderError) as exc_info:
            await collect(provider, chat_request)

        assert exc_info.value.upstream_status == 401
        assert "bad key" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error(self, provider, chat_request, respx_mock):
        respx_mock.post(ANTHROPIC_URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ProviderError):
            await collect(provider, chat_request)

    @pytest.mark.asyncio
    async def test_malformed_event(self, provider, chat_request, respx_mock):
        respx_mock.post(ANTHROPIC_URL).mock(
            return_value=httpx.Response(200, text=sse("{not json"))
        )

        with pytest.raises(ProviderError, match="Malformed"):
            await collect(provider, chat_request)

    @pytest.mark.asyncio
    async def test_complete(self, provider, chat_request, respx_mock):
        route = respx_mock.post(ANTHROPIC_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": "Step 1 is "},
                        {"type": "text", "text": "collecting data."},
                    ]
                },
            )
        )

        assert await provider.complete(chat_request) == "Step 1 is collecting data."
        assert "stream" not in json.loads(route.calls.last.request.content)

    @pytest.mark.asyncio
    async def test_health_check(self, provider, respx_mock):
        respx_mock.get("https://api.anthropic.test/v1/models").mock(
            return_value=httpx.Response(200, json={"data": []})
        )

        assert await provider.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self, provider, respx_mock):
        respx_mock.get("https://api.anthropic.test/v1/models").mock(
            side_effect=httpx.ConnectTimeout("timeout")
        )

        assert await provider.health_check() is False


class TestOpenAIProvider:
    @pytest.fixture
    def provider(self, http_client):
        return OpenAIProvider(
            base_url="https://api.openai.test/v1",
            api_key="sk-test",
            organization="org-1",
            http_client=http_client,
            model="gpt-test",
        )

    @staticmethod
    def chunk(content: str) -> dict:
        return {"choices": [{"index": 0, "delta": {"content": content}}]}

    @pytest.mark.asyncio
    async def test_streams_content(self, provider, chat_request, respx_mock):
        body = sse(
            {"choices": [{"index": 0, "delta": {"role": "assistant"}}]},
            self.chunk("Hel"),
            self.chunk("lo"),
            "[DONE]",
        )
        route = respx_mock.post(OPENAI_URL).mock(return_value=httpx.Response(200, text=body))

        assert await collect(provider, chat_request) == ["Hel", "lo"]

        sent = route.calls.last.request
        assert sent.headers["Authorization"] == "Bearer sk-test"
        assert sent.headers["OpenAI-Organization"] == "org-1"
        payload = json.loads(sent.content)
        assert payload["messages"][0] == {"role": "system", "content": "You are a tutor."}
        assert payload["messages"][1]["role"] == "user"
        assert payload["stream"] is True

    @pytest.mark.asyncio
    async def test_missing_done_raises(self, provider, chat_request, respx_mock):
        respx_mock.post(OPENAI_URL).mock(
            return_value=httpx.Response(200, text=sse(self.chunk("Hel")))
        )

        with pytest.raises(ProviderError, match="DONE"):
            await collect(provider, chat_request)

    @pytest.mark.asyncio
    async def test_error_chunk_raises(self, provider, chat_request, respx_mock):
        respx_mock.post(OPENAI_URL).mock(
            return_value=httpx.Response(200, text=sse({"error": {"message": "rate limited"}}))
        )

        with pytest.raises(ProviderError, match="rate limited"):
            await collect(provider, chat_request)

    @pytest.mark.asyncio
    async def test_complete(self, provider, chat_request, respx_mock):
        respx_mock.post(OPENAI_URL).mock(
            return_value=httpx.Response(
                200, json={"choices": [{"message": {"role": "assistant", "content": "Hi"}}]}
            )
        )

        assert await provider.complete(chat_request) == "Hi"

    @pytest.mark.asyncio
    async def test_complete_unexpected_shape(self, provider, chat_request, respx_mock):
        respx_mock.post(OPENAI_URL).mock(return_value=httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderError):
            await provider.complete(chat_request)


class TestMockProvider:
    @pytest.mark.asyncio
    async def test_checklist_prompt_returns_json(self):
        provider = MockProvider()
        request = CompletionRequest(
            messages=[{"role": "user", "content": "Return a checklist as JSON"}]
        )

        text = await provider.complete(request)

        assert json.loads(text)["valid"] is True

    @pytest.mark.asyncio
    async def test_counts_calls_and_closes(self):
        provider = MockProvider(fragments=["a", "b"])
        request = CompletionRequest(messages=[{"role": "user", "content": "x"}])

        assert await collect(provider, request) == ["a", "b"]
        assert provider.calls == 1
        assert provider.closed_streams == 1
        assert provider.requests == [request]


class TestProviderFactory:
    def test_mock(self):
        assert isinstance(create_provider("mock"), MockProvider)

    @pytest.mark.asyncio
    async def test_anthropic_uses_given_client(self, http_client):
        provider = create_provider("anthropic", http_client=http_client)

        assert isinstance(provider, AnthropicProvider)
        assert provider.http_client is http_client

    @pytest.mark.asyncio
    async def test_openai(self, http_client):
        assert isinstance(create_provider("openai", http_client=http_client), OpenAIProvider)

    def test_without_shared_client(self):
        provider = create_provider("anthropic")

        assert provider.http_client is None

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_provider("deepseek")
