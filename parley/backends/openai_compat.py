"""
OpenAI-style chat backend.

One adapter covers three service types:
- openai            : api.openai.com, optional organisation header
- openaicompatible  : any server exposing /chat/completions under api_url
                      (vLLM, llama.cpp server, LocalAI, Ollama's /v1, ...)
- azure             : Azure OpenAI deployments, api-key header and a pinned
                      api-version

Responses are read as server-sent events. Tool-call fragments are
buffered per call index until the model finishes with `tool_calls`.
A per-line watchdog turns a stalled upstream into a timeout error.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging

import httpx

from parley.backends.base import (
    SERVICE_AZURE,
    SERVICE_OPENAI,
    EmbeddingProvider,
    LanguageModel,
    LanguageModelOptions,
    ServiceConfig,
)
from parley.errors import LLMError, LLMTimeoutError, TooManyFunctionCallsError
from parley.llm.models import CompletionRequest, Post, PostRole, ToolCall
from parley.llm.stream import StreamEvent, TextStream

logger = logging.getLogger(__name__)

OPENAI_API_URL = "https://api.openai.com/v1"
AZURE_API_VERSION = "2024-06-01"

MAX_FUNCTION_CALLS = 10
MAX_IMAGE_SIZE = 20 * 1024 * 1024  # 20 MB
SUPPORTED_IMAGE_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-large"
DEFAULT_EMBEDDING_DIMENSIONS = 3072

_ROLES = {
    PostRole.USER: "user",
    PostRole.ASSISTANT: "assistant",
    PostRole.SYSTEM: "system",
}

# Longest prefix wins; checked in order.
_MODEL_LIMITS = [
    ("gpt-4o", 128000),
    ("o1-preview", 128000),
    ("o1-mini", 128000),
    ("gpt-4-turbo", 128000),
    ("gpt-4-0125-preview", 128000),
    ("gpt-4-1106-preview", 128000),
    ("gpt-4", 8192),
    ("gpt-3.5-turbo-instruct", 4096),
    ("gpt-3.5-turbo", 16385),
]
DEFAULT_INPUT_TOKEN_LIMIT = 128000


def count_tokens(text: str) -> int:
    """Average of a character-based and a word-based estimate."""
    chars = len(text) / 4.0
    words = len(text.split()) / 0.75
    return int((chars + words) / 2.0)


def posts_to_messages(posts: list[Post]) -> list[dict]:
    """Convert provider-neutral posts to chat completion messages."""
    messages: list[dict] = []
    for post in posts:
        message: dict = {"role": _ROLES.get(post.role, "user")}

        if post.files:
            parts: list[dict] = []
            if post.message:
                parts.append({"type": "text", "text": post.message})
            for f in post.files:
                if f.mime_type not in SUPPORTED_IMAGE_TYPES:
                    parts.append({
                        "type": "text",
                        "text": "User submitted image was not a supported format. Tell the user this.",
                    })
                    continue
                if f.size > MAX_IMAGE_SIZE:
                    parts.append({
                        "type": "text",
                        "text": "User submitted a image larger than 20MB. Tell the user this.",
                    })
                    continue
                try:
                    data = f.read()
                except Exception as e:
                    logger.warning("Skipping unreadable image attachment: %s", e)
                    continue
                encoded = base64.b64encode(data).decode("ascii")
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{f.mime_type};base64,{encoded}", "detail": "auto"},
                })
            message["content"] = parts
        else:
            message["content"] = post.message

        if post.tool_use:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in post.tool_use
            ]
        messages.append(message)

        for call in post.tool_use:
            messages.append({
                "role": "tool",
                "tool_call_id": call.id,
                "content": call.result,
            })
    return messages


def trailing_tool_results(messages: list[dict]) -> int:
    """Number of consecutive tool-result messages at the end of the prompt."""
    count = 0
    for message in reversed(messages):
        if message.get("role") != "tool":
            break
        count += 1
    return count


class OpenAIBackend(LanguageModel):
    """
    Chat model speaking the OpenAI chat completions protocol.
    """

    def __init__(self, config: ServiceConfig, service_type: str = SERVICE_OPENAI):
        self.config = config
        self.service_type = service_type

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def default_options(self) -> LanguageModelOptions:
        return LanguageModelOptions(
            model=self.config.default_model,
            max_generated_tokens=self.config.output_token_limit,
        )

    def _endpoint(self, model: str) -> tuple[str, dict]:
        """URL and query params for the chat completions call."""
        if self.service_type == SERVICE_AZURE:
            base = self.config.api_url.rstrip("/")
            return (
                f"{base}/openai/deployments/{model}/chat/completions",
                {"api-version": AZURE_API_VERSION},
            )
        base = (self.config.api_url or OPENAI_API_URL).rstrip("/")
        if self.service_type == SERVICE_OPENAI:
            base = OPENAI_API_URL
        return f"{base}/chat/completions", {}

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.service_type == SERVICE_AZURE:
            headers["api-key"] = self.config.api_key
            return headers
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if self.service_type == SERVICE_OPENAI and self.config.org_id:
            headers["OpenAI-Organization"] = self.config.org_id
        return headers

    def build_body(self, request: CompletionRequest, opts: LanguageModelOptions) -> dict:
        body: dict = {
            "model": opts.model,
            "messages": posts_to_messages(request.posts),
            "stream": True,
        }
        if opts.max_generated_tokens:
            body["max_tokens"] = opts.max_generated_tokens
        if opts.json_output_format:
            body["response_format"] = {"type": "json_object"}

        ctx = request.context
        if ctx is not None and ctx.tools is not None and len(ctx.tools):
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.schema,
                    },
                }
                for tool in ctx.tools.get_tools()
            ]
        if self.config.send_user_id and ctx is not None and ctx.requesting_user is not None:
            body["user"] = ctx.requesting_user.id
        return body

    # ------------------------------------------------------------------
    # LanguageModel interface
    # ------------------------------------------------------------------

    async def chat_completion(self, request: CompletionRequest, **opts) -> TextStream:
        options = self.default_options().merged(**opts)
        body = self.build_body(request, options)
        url, params = self._endpoint(options.model)
        stream = TextStream()

        async def producer(out: TextStream) -> None:
            await self._stream(url, params, body, out)

        return stream.start(producer)

    async def _stream(self, url: str, params: dict, body: dict, out: TextStream) -> None:
        timeout = self.config.streaming_timeout
        tool_buffer: dict[int, dict] = {}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
                request = client.build_request("POST", url, json=body, headers=self._headers(), params=params)
                try:
                    resp = await asyncio.wait_for(client.send(request, stream=True), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning("Backend '%s' sent no response headers for %.0fs", self.service_type, timeout)
                    out.send(StreamEvent.failure(LLMTimeoutError()))
                    return
                try:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", errors="replace")
                        out.send(StreamEvent.failure(LLMError(
                            f"HTTP {resp.status_code}: {detail[:200]}", resp.status_code,
                        )))
                        return

                    lines = resp.aiter_lines()
                    while True:
                        try:
                            line = await asyncio.wait_for(anext(lines), timeout=timeout)
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError:
                            logger.warning("Backend '%s' stream stalled for %.0fs", self.service_type, timeout)
                            out.send(StreamEvent.failure(LLMTimeoutError()))
                            return

                        if self._handle_line(line, body, tool_buffer, out):
                            return
                finally:
                    await resp.aclose()
        except httpx.TimeoutException:
            out.send(StreamEvent.failure(LLMTimeoutError()))
            return
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.service_type, e)
            out.send(StreamEvent.failure(LLMError(str(e))))
            return

        out.send(StreamEvent.failure(LLMError("stream closed before the model finished")))

    def _handle_line(self, line: str, body: dict, tool_buffer: dict[int, dict], out: TextStream) -> bool:
        """Process one SSE line. Returns True once a terminal event was sent."""
        if not line or not line.startswith("data:"):
            return False
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            out.send(StreamEvent.end())
            return True
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream chunk: %s", payload[:200])
            return False

        if "error" in chunk:
            err = chunk["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            out.send(StreamEvent.failure(LLMError(message)))
            return True

        choices = chunk.get("choices") or []
        if not choices:
            return False
        choice = choices[0]
        delta = choice.get("delta") or {}

        for fragment in delta.get("tool_calls") or []:
            index = fragment.get("index")
            if index is None:
                continue
            entry = tool_buffer.setdefault(index, {"id": "", "name": "", "arguments": ""})
            function = fragment.get("function") or {}
            entry["id"] += fragment.get("id") or ""
            entry["name"] += function.get("name") or ""
            entry["arguments"] += function.get("arguments") or ""

        content = delta.get("content")
        if content:
            out.send(StreamEvent.text_chunk(content))

        finish = choice.get("finish_reason")
        if not finish:
            return False
        if finish == "tool_calls":
            if trailing_tool_results(body["messages"]) > MAX_FUNCTION_CALLS:
                out.send(StreamEvent.failure(TooManyFunctionCallsError()))
                return True
            calls = [
                ToolCall(id=entry["id"], name=entry["name"], arguments=entry["arguments"])
                for _, entry in sorted(tool_buffer.items())
            ]
            out.send(StreamEvent.calls(calls))
            return True
        if finish != "stop":
            logger.info("Backend '%s' finished with reason '%s'", self.service_type, finish)
        out.send(StreamEvent.end())
        return True

    def count_tokens(self, text: str) -> int:
        return count_tokens(text)

    def input_token_limit(self) -> int:
        if self.config.input_token_limit > 0:
            return self.config.input_token_limit
        model = self.config.default_model
        for prefix, limit in _MODEL_LIMITS:
            if model.startswith(prefix):
                return limit
        return DEFAULT_INPUT_TOKEN_LIMIT


class OpenAIEmbeddings(EmbeddingProvider):
    """Embeddings from /embeddings on OpenAI or a compatible server."""

    def __init__(self, config: ServiceConfig, timeout: float = 30.0):
        self.config = config
        self.model = config.embedding_model or DEFAULT_EMBEDDING_MODEL
        self._dimensions = config.embedding_dimensions or DEFAULT_EMBEDDING_DIMENSIONS
        self.url = (config.api_url or OPENAI_API_URL).rstrip("/")
        self.timeout = timeout

    def dimensions(self) -> int:
        return self._dimensions

    async def create_embedding(self, text: str) -> list[float]:
        vectors = await self.batch_create_embeddings([text])
        return vectors[0]

    async def batch_create_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        body = {"input": texts, "model": self.model, "dimensions": self._dimensions}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(f"{self.url}/embeddings", json=body, headers=headers)
            if resp.status_code >= 400:
                raise LLMError(f"failed to create embeddings: HTTP {resp.status_code}: {resp.text[:200]}",
                               resp.status_code)
            data = resp.json().get("data") or []

        if len(data) != len(texts):
            raise LLMError(f"expected {len(texts)} embeddings, got {len(data)}")
        data = sorted(data, key=lambda d: d.get("index", 0))
        return [d["embedding"] for d in data]
