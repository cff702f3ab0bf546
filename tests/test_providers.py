"""Tests for provider adapters — request shape, error mapping, model ranking."""

import json

import httpx
import pytest

from nexus.errors import (
    AuthError,
    ConfigurationError,
    ProviderError,
    RateLimitError,
    UnavailableError,
    UnrecoverableError,
)
from nexus.llm.sse import decode_sse
from nexus.providers.anthropic import AnthropicAdapter
from nexus.providers.base import ChatMessage, Model, format_model_name, rank_models
from nexus.providers.gemini import GeminiAdapter
from nexus.providers.openai_compat import (
    GroqAdapter,
    HuggingFaceAdapter,
    NvidiaAdapter,
    OpenRouterAdapter,
)
from nexus.providers.registry import PROVIDERS, AdapterRegistry

HISTORY = [
    ChatMessage("user", "Hi"),
    ChatMessage("assistant", "Hello!"),
    ChatMessage("user", "How are you?"),
]


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def body(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


def _sse(*lines: str) -> httpx.Response:
    return httpx.Response(200, content="".join(f"data: {line}\n\n" for line in lines).encode())


async def _tokens(stream) -> list[str]:
    async with stream:
        return [t.text async for t in decode_sse(stream.aiter_bytes(), stream.dialect)]


# -- helpers -------------------------------------------------------------------


class TestFormatModelName:
    def test_known_name(self):
        assert format_model_name("llama-3.3-70b-versatile") == "Llama 3.3 70B"

    def test_fallback_title_case(self):
        assert format_model_name("qwen/qwen-2-7b") == "Qwen Qwen 2 7b"


def test_rank_models_preferred_first_rest_in_order():
    models = [Model(id=i, name=i) for i in ("a", "b", "c", "d")]
    ranked = rank_models(models, ["c", "missing", "a"])
    assert [m.id for m in ranked] == ["c", "a", "b", "d"]


# -- registry ------------------------------------------------------------------


class TestRegistry:
    def test_every_provider_has_an_adapter(self):
        registry = AdapterRegistry.default()
        assert list(registry) == list(PROVIDERS)
        assert {"gemini", "groq", "openrouter", "huggingface", "nvidia", "anthropic"} <= set(PROVIDERS)

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unknown provider"):
            AdapterRegistry.default().get("nope")

    async def test_default_shares_one_client_and_closes_it(self):
        registry = AdapterRegistry.default()
        clients = {id(registry.get(pid).http) for pid in registry}
        assert len(clients) == 1

        shared = registry.get("groq").http
        await registry.aclose()
        assert shared.is_closed

    async def test_aclose_leaves_injected_client_open(self):
        client = httpx.AsyncClient()
        registry = AdapterRegistry.default(client)
        await registry.aclose()
        assert not client.is_closed
        await client.aclose()


# -- Gemini --------------------------------------------------------------------


class TestGemini:
    async def test_request_shape(self):
        rec = Recorder(_sse('{"candidates": [{"content": {"parts": [{"text": "ok"}]}, "finishReason": "STOP"}]}'))
        adapter = GeminiAdapter(rec.client())

        stream = await adapter.stream_completion("g-key", "gemini-1.5-flash", HISTORY, "Be nice")
        assert await _tokens(stream) == ["ok"]

        request = rec.requests[0]
        assert request.url.path.endswith("/models/gemini-1.5-flash:streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        assert "g-key" not in str(request.url)
        assert request.headers["x-goog-api-key"] == "g-key"
        body = rec.body()
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["contents"][1]["parts"] == [{"text": "Hello!"}]
        assert body["systemInstruction"] == {"parts": [{"text": "Be nice"}]}

    async def test_list_models_filters_and_ranks(self):
        rec = Recorder(
            httpx.Response(
                200,
                json={
                    "models": [
                        {"name": "models/gemini-1.5-pro", "supportedGenerationMethods": ["generateContent"]},
                        {"name": "models/embedding-001", "supportedGenerationMethods": ["embedContent"]},
                        {"name": "models/gemini-1.5-flash", "supportedGenerationMethods": ["generateContent"]},
                    ]
                },
            )
        )
        models = await GeminiAdapter(rec.client()).list_models("g-key")
        assert [m.id for m in models] == ["gemini-1.5-flash", "gemini-1.5-pro"]
        assert models[0].name == "Gemini 1.5 Flash"

    async def test_invalid_key_400_is_auth_error(self):
        rec = Recorder(
            httpx.Response(400, json={"error": {"message": "API key not valid", "status": "API_KEY_INVALID"}})
        )
        with pytest.raises(AuthError):
            await GeminiAdapter(rec.client()).stream_completion("bad", "gemini-1.5-flash", HISTORY)


# -- OpenAI-compatible ---------------------------------------------------------


class TestOpenAICompatible:
    async def test_groq_request_shape(self):
        rec = Recorder(
            _sse(
                '{"choices": [{"delta": {"content": "Hi"}}]}',
                '{"choices": [{"delta": {}, "finish_reason": "stop"}]}',
                "[DONE]",
            )
        )
        stream = await GroqAdapter(rec.client()).stream_completion("gsk", "llama-3.3-70b-versatile", HISTORY, "Sys")
        assert await _tokens(stream) == ["Hi", ""]

        request = rec.requests[0]
        assert str(request.url) == "https://api.groq.com/openai/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer gsk"
        body = rec.body()
        assert body["stream"] is True
        assert body["messages"][0] == {"role": "system", "content": "Sys"}
        assert [m["role"] for m in body["messages"][1:]] == ["user", "assistant", "user"]

    async def test_groq_models_exclude_whisper_and_rank(self):
        rec = Recorder(
            httpx.Response(
                200,
                json={
                    "data": [
                        {"id": "gemma2-9b-it"},
                        {"id": "whisper-large-v3"},
                        {"id": "llama-3.3-70b-versatile", "context_window": 131072},
                    ]
                },
            )
        )
        models = await GroqAdapter(rec.client()).list_models("gsk")
        assert [m.id for m in models] == ["llama-3.3-70b-versatile", "gemma2-9b-it"]
        assert models[0].context_length == 131072

    async def test_openrouter_headers_and_context_filter(self):
        rec = Recorder(
            httpx.Response(
                200,
                json={
                    "data": [
                        {"id": "x/no-context", "name": "No Context"},
                        {"id": "meta-llama/llama-3.3-70b-instruct", "name": "Llama", "context_length": 131072},
                    ]
                },
            )
        )
        models = await OpenRouterAdapter(rec.client()).list_models("or-key")
        assert [m.id for m in models] == ["meta-llama/llama-3.3-70b-instruct"]
        assert rec.requests[0].headers["x-title"] == "NexusAI"
        assert "http-referer" in rec.requests[0].headers

    async def test_huggingface_bad_key(self):
        rec = Recorder(httpx.Response(401, json={"error": "Invalid credentials"}))
        with pytest.raises(AuthError, match="Invalid Hugging Face API key"):
            await HuggingFaceAdapter(rec.client()).list_models("hf_bad")

    async def test_huggingface_merges_listings(self):
        rec = Recorder(
            httpx.Response(200, json={"name": "ada"}),
            httpx.Response(200, json=[{"id": "a/one"}, {"id": "b/two"}]),
            httpx.Response(200, json=[{"id": "b/two"}, {"id": "c/three"}]),
        )
        models = await HuggingFaceAdapter(rec.client()).list_models("hf_ok")
        assert [m.id for m in models] == ["a/one", "b/two", "c/three"]

    async def test_huggingface_tolerates_conversational_failure(self):
        rec = Recorder(
            httpx.Response(200, json={"name": "ada"}),
            httpx.Response(200, json=[{"id": "a/one"}]),
            httpx.Response(503, text="busy"),
        )
        models = await HuggingFaceAdapter(rec.client()).list_models("hf_ok")
        assert [m.id for m in models] == ["a/one"]

    async def test_huggingface_stream_url(self):
        rec = Recorder(_sse('{"choices": [{"delta": {"content": "x"}, "finish_reason": "stop"}]}'))
        stream = await HuggingFaceAdapter(rec.client()).stream_completion("hf", "org/model", HISTORY)
        await _tokens(stream)
        assert rec.requests[0].url.path == "/models/org/model/v1/chat/completions"
        assert rec.body()["max_tokens"] == 4096

    async def test_nvidia_kimi_body(self):
        rec = Recorder(_sse("[DONE]"))
        stream = await NvidiaAdapter(rec.client()).stream_completion("nv", "moonshotai/kimi-k2.5", HISTORY)
        await _tokens(stream)
        body = rec.body()
        assert body["max_tokens"] == 16384
        assert body["chat_template_kwargs"] == {"thinking": True}
        assert rec.requests[0].headers["accept"] == "text/event-stream"

    async def test_nvidia_static_catalog(self):
        models = await NvidiaAdapter(httpx.AsyncClient()).list_models("nv")
        assert models[0].id == "moonshotai/kimi-k2.5"


# -- Anthropic -----------------------------------------------------------------


async def test_anthropic_request_shape():
    rec = Recorder(
        _sse(
            '{"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Yo"}}',
            '{"type": "message_stop"}',
        )
    )
    stream = await AnthropicAdapter(rec.client()).stream_completion("sk-ant", "claude-x", HISTORY, "Sys")
    assert await _tokens(stream) == ["Yo", ""]
    request = rec.requests[0]
    assert request.headers["x-api-key"] == "sk-ant"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = rec.body()
    assert body["system"] == "Sys"
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]


# -- error mapping -------------------------------------------------------------


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, AuthError),
        (403, AuthError),
        (429, RateLimitError),
        (500, UnavailableError),
        (503, UnavailableError),
        (404, UnrecoverableError),
        (422, UnrecoverableError),
    ],
)
async def test_non_2xx_raises_before_any_token(status: int, error: type):
    rec = Recorder(httpx.Response(status, json={"error": {"message": "nope"}}))
    with pytest.raises(error) as exc_info:
        await GroqAdapter(rec.client()).stream_completion("gsk", "m", HISTORY)
    assert exc_info.value.status_code == status
    assert exc_info.value.provider_id == "groq"


async def test_redirect_is_not_an_open_stream():
    rec = Recorder(httpx.Response(302, headers={"Location": "https://login.example.com"}))
    with pytest.raises(UnrecoverableError) as exc_info:
        await GroqAdapter(rec.client()).stream_completion("gsk", "m", HISTORY)
    assert exc_info.value.status_code == 302


async def test_redirect_fails_model_listing():
    rec = Recorder(httpx.Response(307, headers={"Location": "https://login.example.com"}))
    with pytest.raises(UnrecoverableError):
        await AnthropicAdapter(rec.client()).list_models("sk-ant")


class TestUnexpectedListingBody:
    async def test_html_page_is_provider_error(self):
        rec = Recorder(
            httpx.Response(200, headers={"Content-Type": "text/html"}, text="<html>captive portal</html>")
        )
        with pytest.raises(ProviderError) as exc_info:
            await GroqAdapter(rec.client()).list_models("gsk")
        assert isinstance(exc_info.value, UnavailableError)
        assert exc_info.value.provider_id == "groq"

    @pytest.mark.parametrize(
        ("adapter_cls", "payload"),
        [
            (GroqAdapter, {"data": [{"no_id": 1}]}),
            (GroqAdapter, ["not", "an", "object"]),
            (OpenRouterAdapter, {"data": [{"id": "x", "context_length": "lots"}]}),
            (GeminiAdapter, {"models": [{"supportedGenerationMethods": ["generateContent"]}]}),
            (AnthropicAdapter, {"data": "claude"}),
        ],
    )
    async def test_wrong_shape_is_unavailable(self, adapter_cls, payload):
        rec = Recorder(httpx.Response(200, json=payload))
        with pytest.raises(UnavailableError, match="unexpected response"):
            await adapter_cls(rec.client()).list_models("key")

    async def test_huggingface_listing_not_a_list(self):
        rec = Recorder(
            httpx.Response(200, json={"name": "ada"}),
            httpx.Response(200, json={"error": "maintenance"}),
            httpx.Response(200, json=[]),
        )
        with pytest.raises(UnavailableError):
            await HuggingFaceAdapter(rec.client()).list_models("hf_ok")


async def test_transport_failure_is_unavailable():
    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(boom))
    with pytest.raises(UnavailableError):
        await GroqAdapter(client).stream_completion("gsk", "m", HISTORY)
    with pytest.raises(UnavailableError):
        await GroqAdapter(client).list_models("gsk")


async def test_connection_lost_mid_stream_is_unavailable():
    async def body():
        yield b'data: {"choices": [{"delta": {"content": "a"}}]}\n\n'
        raise httpx.ReadError("reset")

    rec = Recorder(httpx.Response(200, content=body()))
    stream = await GroqAdapter(rec.client()).stream_completion("gsk", "m", HISTORY)
    received: list[str] = []
    with pytest.raises(UnavailableError):
        async with stream:
            async for token in decode_sse(stream.aiter_bytes(), stream.dialect):
                received.append(token.text)
    assert received == ["a"]
