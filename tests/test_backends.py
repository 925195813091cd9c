"""
Tests for the language model and embedding adapters.
Run with: pytest tests/test_backends.py

HTTP is served by httpx.MockTransport; the adapters' AsyncClient is
patched to route through it.
"""

import asyncio
import json

import httpx
import pytest

from conftest import mock_httpx
from parley.backends import make_embedding_provider, make_language_model
from parley.backends.anthropic import AnthropicBackend, conversation_to_messages
from parley.backends.base import LanguageModelOptions, ServiceConfig
from parley.backends.ollama import OllamaEmbeddings
from parley.backends.openai_compat import (
    MAX_IMAGE_SIZE,
    OpenAIBackend,
    OpenAIEmbeddings,
    posts_to_messages,
    trailing_tool_results,
)
from parley.errors import LLMError, LLMTimeoutError, TooManyFunctionCallsError
from parley.host.models import User
from parley.llm.context import LLMContext
from parley.llm.models import CompletionRequest, File, Post, PostRole, ToolCall, ToolCallStatus
from parley.llm.stream import EventType
from parley.llm.tools import Tool, ToolStore


def _sse(*chunks) -> str:
    lines = []
    for chunk in chunks:
        payload = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines)


def _openai_delta(content=None, finish=None, tool_calls=None) -> dict:
    delta = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"delta": delta, "finish_reason": finish}]}


async def _collect(stream):
    return [event async for event in stream]


def _simple_request(message="hi") -> CompletionRequest:
    return CompletionRequest(posts=[
        Post(role=PostRole.SYSTEM, message="be brief"),
        Post(role=PostRole.USER, message=message),
    ])


# ---------------------------------------------------------------------------
# Factories and options
# ---------------------------------------------------------------------------

def test_make_language_model_by_type():
    assert isinstance(make_language_model(ServiceConfig(type="openai")), OpenAIBackend)
    assert make_language_model(ServiceConfig(type="azure")).service_type == "azure"
    assert isinstance(make_language_model(ServiceConfig(type="anthropic")), AnthropicBackend)
    with pytest.raises(ValueError, match="Unknown LLM service type"):
        make_language_model(ServiceConfig(type="carrier-pigeon"))


def test_make_embedding_provider():
    provider = make_embedding_provider({"type": "ollama", "parameters": {"embedding_model": "nomic-embed-text"}})
    assert isinstance(provider, OllamaEmbeddings)
    assert provider.dimensions() == 768

    openai = make_embedding_provider({"type": "openai", "parameters": {
        "api_key": "sk", "api_url": "http://ignored", "embedding_dimensions": 256,
    }})
    assert openai.url == "https://api.openai.com/v1"
    assert openai.dimensions() == 256

    with pytest.raises(ValueError):
        make_embedding_provider({"type": "unknown"})


def test_options_merge():
    base = LanguageModelOptions(model="gpt-4o", max_generated_tokens=100)
    merged = base.merged(max_generated_tokens=25, model=None)
    assert merged.model == "gpt-4o"
    assert merged.max_generated_tokens == 25
    with pytest.raises(TypeError):
        base.merged(temperature=0.2)


def test_service_config_ignores_unknown_keys():
    cfg = ServiceConfig.from_dict({"type": "openai", "api_key": "k", "colour": "blue"})
    assert cfg.api_key == "k"
    assert cfg.streaming_timeout == 10.0


# ---------------------------------------------------------------------------
# OpenAI message conversion
# ---------------------------------------------------------------------------

def test_posts_to_messages_with_tool_results():
    call = ToolCall(id="c1", name="Lookup", arguments='{"q": "x"}', result="found", status=ToolCallStatus.SUCCESS)
    messages = posts_to_messages([
        Post(role=PostRole.SYSTEM, message="sys"),
        Post(role=PostRole.USER, message="look it up"),
        Post(role=PostRole.ASSISTANT, message="", tool_use=[call]),
    ])
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool"]
    assert messages[2]["tool_calls"][0]["function"] == {"name": "Lookup", "arguments": '{"q": "x"}'}
    assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "found"}
    assert trailing_tool_results(messages) == 1


def test_posts_to_messages_images():
    png = File(mime_type="image/png", size=3, reader=lambda: b"abc")
    tiff = File(mime_type="image/tiff", size=3, reader=lambda: b"abc")
    messages = posts_to_messages([Post(role=PostRole.USER, message="what is this", files=[png, tiff])])
    parts = messages[0]["content"]
    assert parts[0] == {"type": "text", "text": "what is this"}
    assert parts[1]["image_url"]["url"] == "data:image/png;base64,YWJj"
    assert "not a supported format" in parts[2]["text"]


def test_input_token_limit():
    assert OpenAIBackend(ServiceConfig(default_model="gpt-4o-mini")).input_token_limit() == 128000
    assert OpenAIBackend(ServiceConfig(default_model="gpt-4")).input_token_limit() == 8192
    assert OpenAIBackend(ServiceConfig(default_model="llama3")).input_token_limit() == 128000
    assert OpenAIBackend(ServiceConfig(default_model="gpt-4", input_token_limit=500)).input_token_limit() == 500


def test_azure_endpoint_and_headers():
    backend = OpenAIBackend(ServiceConfig(api_url="https://res.openai.azure.com/", api_key="az"), "azure")
    url, params = backend._endpoint("my-deploy")
    assert url == "https://res.openai.azure.com/openai/deployments/my-deploy/chat/completions"
    assert "api-version" in params
    assert backend._headers()["api-key"] == "az"
    assert "Authorization" not in backend._headers()


def test_openai_ignores_custom_url():
    backend = OpenAIBackend(ServiceConfig(api_url="http://elsewhere", org_id="org1", api_key="sk"))
    url, _ = backend._endpoint("gpt-4o")
    assert url == "https://api.openai.com/v1/chat/completions"
    assert backend._headers()["OpenAI-Organization"] == "org1"


def test_body_includes_tools_and_user():
    async def resolver(context, get_args):
        return ""

    tools = ToolStore()
    tools.add_tools([Tool("Lookup", "find things", {"type": "object"}, resolver)])
    context = LLMContext(tools=tools, requesting_user=User(id="u1"))
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o", send_user_id=True))

    body = backend.build_body(CompletionRequest(posts=[], context=context),
                              backend.default_options().merged(json_output_format=True))
    assert body["tools"][0]["function"]["name"] == "Lookup"
    assert body["user"] == "u1"
    assert body["response_format"] == {"type": "json_object"}


# ---------------------------------------------------------------------------
# OpenAI streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_streams_text():
    body = _sse(_openai_delta("Hel"), _openai_delta("lo"), _openai_delta(finish="stop"), "[DONE]")
    seen = []
    backend = OpenAIBackend(ServiceConfig(type="openai", api_key="sk-1", default_model="gpt-4o"))

    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(200, text=body), seen):
        stream = await backend.chat_completion(_simple_request(), max_generated_tokens=50)
        text = await stream.read_all()

    assert text == "Hello"
    sent = json.loads(seen[0].content)
    assert sent["model"] == "gpt-4o"
    assert sent["stream"] is True
    assert sent["max_tokens"] == 50
    assert seen[0].headers["Authorization"] == "Bearer sk-1"


@pytest.mark.asyncio
async def test_openai_assembles_tool_calls():
    body = _sse(
        _openai_delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "Look", "arguments": '{"q":'}}]),
        _openai_delta(tool_calls=[{"index": 0, "function": {"name": "up", "arguments": ' "x"}'}}]),
        _openai_delta(finish="tool_calls"),
    )
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o"))

    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(200, text=body), []):
        events = await _collect(await backend.chat_completion(_simple_request()))

    assert events[-1].type == EventType.TOOL_CALLS
    call = events[-1].tool_calls[0]
    assert (call.id, call.name, json.loads(call.arguments)) == ("call_1", "Lookup", {"q": "x"})


@pytest.mark.asyncio
async def test_openai_http_error():
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o"))
    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(429, text="slow down"), []):
        stream = await backend.chat_completion(_simple_request())
        with pytest.raises(LLMError) as exc:
            await stream.read_all()
    assert exc.value.status_code == 429


@pytest.mark.asyncio
async def test_openai_too_many_function_calls():
    calls = [ToolCall(id=f"c{i}", name="Look", result="r", status=ToolCallStatus.SUCCESS) for i in range(11)]
    request = CompletionRequest(posts=[
        Post(role=PostRole.USER, message="go"),
        Post(role=PostRole.ASSISTANT, tool_use=calls),
    ])
    body = _sse(
        _openai_delta(tool_calls=[{"index": 0, "id": "c12", "function": {"name": "Look", "arguments": "{}"}}]),
        _openai_delta(finish="tool_calls"),
    )
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o"))

    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(200, text=body), []):
        stream = await backend.chat_completion(request)
        with pytest.raises(TooManyFunctionCallsError):
            await stream.read_all()


@pytest.mark.asyncio
async def test_openai_stream_cut_short():
    body = _sse(_openai_delta("partial"))
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o"))
    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(200, text=body), []):
        events = await _collect(await backend.chat_completion(_simple_request()))
    assert [e.type for e in events] == [EventType.TEXT, EventType.ERROR]


async def _never_answers(request):
    await asyncio.sleep(30)
    return httpx.Response(200)


def _stalls_after(first: str):
    async def body():
        yield first.encode()
        await asyncio.sleep(30)

    return lambda request: httpx.Response(200, content=body())


@pytest.mark.asyncio
async def test_openai_times_out_waiting_for_headers():
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o", streaming_timeout_seconds=0.05))
    with mock_httpx("parley.backends.openai_compat", _never_answers, []):
        events = await asyncio.wait_for(_collect(await backend.chat_completion(_simple_request())), 5)
    assert [e.type for e in events] == [EventType.ERROR]
    assert isinstance(events[0].error, LLMTimeoutError)


@pytest.mark.asyncio
async def test_openai_times_out_when_stream_stalls():
    backend = OpenAIBackend(ServiceConfig(default_model="gpt-4o", streaming_timeout_seconds=0.05))
    handler = _stalls_after(_sse(_openai_delta("par")))
    with mock_httpx("parley.backends.openai_compat", handler, []):
        events = await asyncio.wait_for(_collect(await backend.chat_completion(_simple_request())), 5)
    assert [e.type for e in events] == [EventType.TEXT, EventType.ERROR]
    assert events[0].text == "par"
    assert isinstance(events[1].error, LLMTimeoutError)


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

def test_anthropic_merges_roles_and_lifts_system():
    call = ToolCall(id="t1", name="Look", arguments='{"q": "x"}', result="found", status=ToolCallStatus.SUCCESS)
    system, messages = conversation_to_messages([
        Post(role=PostRole.SYSTEM, message="sys"),
        Post(role=PostRole.USER, message="one"),
        Post(role=PostRole.USER, message="two"),
        Post(role=PostRole.ASSISTANT, message="checking", tool_use=[call]),
    ])
    assert system == "sys"
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert [b["text"] for b in messages[0]["content"]] == ["one", "two"]
    assert messages[1]["content"][1] == {"type": "tool_use", "id": "t1", "name": "Look", "input": {"q": "x"}}
    assert messages[2]["content"] == [{"type": "tool_result", "tool_use_id": "t1", "content": "found"}]


def test_anthropic_images_respect_type_and_size():
    read = []
    png = File(mime_type="image/png", size=3, reader=lambda: b"abc")
    huge = File(mime_type="image/jpeg", size=MAX_IMAGE_SIZE + 1, reader=lambda: read.append("huge") or b"x")
    tiff = File(mime_type="image/tiff", size=3, reader=lambda: b"abc")
    _, messages = conversation_to_messages([Post(role=PostRole.USER, message="look", files=[png, huge, tiff])])

    blocks = messages[0]["content"]
    assert blocks[1]["source"] == {"type": "base64", "media_type": "image/png", "data": "YWJj"}
    assert blocks[2] == {"type": "text", "text": "[Image too large]"}
    assert blocks[3] == {"type": "text", "text": "[Unsupported image type: image/tiff]"}
    assert read == []


@pytest.mark.asyncio
async def test_anthropic_streams_text():
    body = _sse(
        {"type": "message_start"},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Bon"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "jour"}},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        {"type": "message_stop"},
    )
    seen = []
    backend = AnthropicBackend(ServiceConfig(api_key="ak", default_model="claude-test"))

    with mock_httpx("parley.backends.anthropic", lambda r: httpx.Response(200, text=body), seen):
        text = await (await backend.chat_completion(_simple_request())).read_all()

    assert text == "Bonjour"
    sent = json.loads(seen[0].content)
    assert sent["system"] == "be brief"
    assert sent["max_tokens"] == 8192
    assert seen[0].headers["x-api-key"] == "ak"
    assert str(seen[0].url) == "https://api.anthropic.com/v1/messages"


@pytest.mark.asyncio
async def test_anthropic_tool_use():
    body = _sse(
        {"type": "content_block_start", "index": 0,
         "content_block": {"type": "tool_use", "id": "toolu_1", "name": "Look", "input": {}}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"q"'}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": ': "y"}'}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
        {"type": "message_stop"},
    )
    backend = AnthropicBackend(ServiceConfig(default_model="claude-test"))
    with mock_httpx("parley.backends.anthropic", lambda r: httpx.Response(200, text=body), []):
        events = await _collect(await backend.chat_completion(_simple_request()))

    call = events[-1].tool_calls[0]
    assert (call.id, call.name, json.loads(call.arguments)) == ("toolu_1", "Look", {"q": "y"})


@pytest.mark.asyncio
async def test_anthropic_error_event():
    body = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    backend = AnthropicBackend(ServiceConfig(default_model="claude-test"))
    with mock_httpx("parley.backends.anthropic", lambda r: httpx.Response(200, text=body), []):
        with pytest.raises(LLMError, match="Overloaded"):
            await (await backend.chat_completion(_simple_request())).read_all()


@pytest.mark.asyncio
async def test_anthropic_times_out_waiting_for_headers():
    backend = AnthropicBackend(ServiceConfig(default_model="claude-test", streaming_timeout_seconds=0.05))
    with mock_httpx("parley.backends.anthropic", _never_answers, []):
        events = await asyncio.wait_for(_collect(await backend.chat_completion(_simple_request())), 5)
    assert [e.type for e in events] == [EventType.ERROR]
    assert isinstance(events[0].error, LLMTimeoutError)


@pytest.mark.asyncio
async def test_anthropic_stream_cut_short():
    body = _sse(
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "half"}},
    )
    backend = AnthropicBackend(ServiceConfig(default_model="claude-test"))
    with mock_httpx("parley.backends.anthropic", lambda r: httpx.Response(200, text=body), []):
        events = await _collect(await backend.chat_completion(_simple_request()))
    assert [e.type for e in events] == [EventType.TEXT, EventType.ERROR]
    assert "before the model finished" in str(events[1].error)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_embeddings_ordered_by_index():
    payload = {"data": [{"index": 1, "embedding": [0.2]}, {"index": 0, "embedding": [0.1]}]}
    seen = []
    provider = OpenAIEmbeddings(ServiceConfig(api_key="sk", embedding_dimensions=1))
    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(200, json=payload), seen):
        vectors = await provider.batch_create_embeddings(["a", "b"])

    assert vectors == [[0.1], [0.2]]
    assert json.loads(seen[0].content)["input"] == ["a", "b"]
    assert str(seen[0].url).endswith("/embeddings")


@pytest.mark.asyncio
async def test_openai_embeddings_count_mismatch():
    provider = OpenAIEmbeddings(ServiceConfig())
    with mock_httpx("parley.backends.openai_compat", lambda r: httpx.Response(200, json={"data": []}), []):
        with pytest.raises(LLMError):
            await provider.create_embedding("a")


@pytest.mark.asyncio
async def test_ollama_embeddings():
    provider = OllamaEmbeddings(model="nomic-embed-text", url="http://fake:11434/")
    seen = []
    payload = {"embeddings": [[1.0, 0.0], [0.0, 1.0]]}
    with mock_httpx("parley.backends.ollama", lambda r: httpx.Response(200, json=payload), seen):
        assert await provider.batch_create_embeddings(["x", "y"]) == payload["embeddings"]
    assert str(seen[0].url) == "http://fake:11434/api/embed"


@pytest.mark.asyncio
async def test_ollama_missing_model():
    provider = OllamaEmbeddings(model="nope")
    with mock_httpx("parley.backends.ollama", lambda r: httpx.Response(404, text="not found"), []):
        with pytest.raises(LLMError, match="ollama pull nope"):
            await provider.create_embedding("x")
