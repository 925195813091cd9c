"""
Anthropic Messages API backend.

Differences from the OpenAI-style adapter:
- system turns are lifted into the top-level `system` string
- the API requires alternating roles, so consecutive same-role posts are
  merged into one message with several content blocks
- tool calls arrive as `tool_use` content blocks whose JSON input is
  streamed in `input_json_delta` fragments
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging

import httpx

from parley.backends.base import LanguageModel, LanguageModelOptions, ServiceConfig
from parley.backends.openai_compat import MAX_FUNCTION_CALLS, MAX_IMAGE_SIZE, count_tokens
from parley.errors import LLMError, LLMTimeoutError, TooManyFunctionCallsError
from parley.llm.models import CompletionRequest, Post, PostRole, ToolCall
from parley.llm.stream import StreamEvent, TextStream

logger = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_MAX_TOKENS = 8192
DEFAULT_INPUT_TOKEN_LIMIT = 100000

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


def conversation_to_messages(posts: list[Post]) -> tuple[str, list[dict]]:
    """Split posts into (system text, alternating role messages)."""
    system = ""
    messages: list[dict] = []
    blocks: list[dict] = []
    role = ""

    def flush():
        nonlocal blocks
        if blocks:
            messages.append({"role": role, "content": blocks})
            blocks = []

    for post in posts:
        if post.role == PostRole.SYSTEM:
            system += post.message
            continue
        target = "assistant" if post.role == PostRole.ASSISTANT else "user"
        if role != target:
            flush()
            role = target

        if post.message:
            blocks.append({"type": "text", "text": post.message})

        for f in post.files:
            if f.mime_type not in SUPPORTED_IMAGE_TYPES:
                blocks.append({"type": "text", "text": f"[Unsupported image type: {f.mime_type}]"})
                continue
            if f.size > MAX_IMAGE_SIZE:
                blocks.append({"type": "text", "text": "[Image too large]"})
                continue
            try:
                data = f.read()
            except Exception as e:
                logger.warning("Unable to read image attachment: %s", e)
                blocks.append({"type": "text", "text": "[Error reading image data]"})
                continue
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": f.mime_type,
                    "data": base64.b64encode(data).decode("ascii"),
                },
            })

        if post.tool_use:
            # tool_use must sit on an assistant turn, results on the next user turn
            if role != "assistant":
                flush()
                role = "assistant"
            for call in post.tool_use:
                try:
                    tool_input = json.loads(call.arguments) if call.arguments else {}
                except json.JSONDecodeError:
                    tool_input = {}
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": tool_input})
            flush()
            role = "user"
            for call in post.tool_use:
                blocks.append({"type": "tool_result", "tool_use_id": call.id, "content": call.result})

    flush()
    return system, messages


def trailing_tool_results(messages: list[dict]) -> int:
    """tool_result blocks in the final user message."""
    if not messages or messages[-1]["role"] != "user":
        return 0
    count = 0
    for block in reversed(messages[-1]["content"]):
        if block.get("type") != "tool_result":
            break
        count += 1
    return count


class AnthropicBackend(LanguageModel):
    def __init__(self, config: ServiceConfig):
        self.config = config
        self.url = (config.api_url or ANTHROPIC_API_URL).rstrip("/")

    def default_options(self) -> LanguageModelOptions:
        return LanguageModelOptions(
            model=self.config.default_model,
            max_generated_tokens=self.config.output_token_limit or DEFAULT_MAX_TOKENS,
        )

    def _headers(self) -> dict:
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def build_body(self, request: CompletionRequest, opts: LanguageModelOptions) -> dict:
        system, messages = conversation_to_messages(request.posts)
        body: dict = {
            "model": opts.model,
            "max_tokens": opts.max_generated_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
            "stream": True,
        }
        if system:
            body["system"] = system
        ctx = request.context
        if ctx is not None and ctx.tools is not None and len(ctx.tools):
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.schema}
                for t in ctx.tools.get_tools()
            ]
        return body

    async def chat_completion(self, request: CompletionRequest, **opts) -> TextStream:
        options = self.default_options().merged(**opts)
        body = self.build_body(request, options)
        stream = TextStream()

        async def producer(out: TextStream) -> None:
            await self._stream(body, out)

        return stream.start(producer)

    async def _stream(self, body: dict, out: TextStream) -> None:
        timeout = self.config.streaming_timeout
        blocks: dict[int, dict] = {}
        stop_reason = ""
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
                request = client.build_request("POST", f"{self.url}/messages", json=body, headers=self._headers())
                try:
                    resp = await asyncio.wait_for(client.send(request, stream=True), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning("Anthropic sent no response headers for %.0fs", timeout)
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
                            logger.warning("Anthropic stream stalled for %.0fs", timeout)
                            out.send(StreamEvent.failure(LLMTimeoutError()))
                            return

                        if not line.startswith("data:"):
                            continue
                        try:
                            event = json.loads(line[len("data:"):].strip())
                        except json.JSONDecodeError:
                            continue

                        kind = event.get("type")
                        if kind == "content_block_start":
                            block = dict(event.get("content_block") or {})
                            block["partial_json"] = ""
                            blocks[event.get("index", 0)] = block
                        elif kind == "content_block_delta":
                            delta = event.get("delta") or {}
                            if delta.get("type") == "text_delta" and delta.get("text"):
                                out.send(StreamEvent.text_chunk(delta["text"]))
                            elif delta.get("type") == "input_json_delta":
                                block = blocks.setdefault(event.get("index", 0), {"partial_json": ""})
                                block["partial_json"] += delta.get("partial_json", "")
                        elif kind == "message_delta":
                            stop_reason = (event.get("delta") or {}).get("stop_reason") or stop_reason
                        elif kind == "error":
                            err = event.get("error") or {}
                            out.send(StreamEvent.failure(LLMError(err.get("message", "anthropic stream error"))))
                            return
                        elif kind == "message_stop":
                            self._finish(stop_reason, blocks, body, out)
                            return
                finally:
                    await resp.aclose()
        except httpx.TimeoutException:
            out.send(StreamEvent.failure(LLMTimeoutError()))
            return
        except httpx.HTTPError as e:
            logger.warning("Anthropic stream failed: %s", e)
            out.send(StreamEvent.failure(LLMError(str(e))))
            return

        out.send(StreamEvent.failure(LLMError("stream closed before the model finished")))

    def _finish(self, stop_reason: str, blocks: dict[int, dict], body: dict, out: TextStream) -> None:
        if stop_reason != "tool_use":
            out.send(StreamEvent.end())
            return
        if trailing_tool_results(body["messages"]) > MAX_FUNCTION_CALLS:
            out.send(StreamEvent.failure(TooManyFunctionCallsError()))
            return
        calls = []
        for _, block in sorted(blocks.items()):
            if block.get("type") != "tool_use":
                continue
            arguments = block["partial_json"] or json.dumps(block.get("input") or {})
            calls.append(ToolCall(id=block.get("id", ""), name=block.get("name", ""), arguments=arguments))
        out.send(StreamEvent.calls(calls))

    def count_tokens(self, text: str) -> int:
        return count_tokens(text)

    def input_token_limit(self) -> int:
        if self.config.input_token_limit > 0:
            return self.config.input_token_limit
        return DEFAULT_INPUT_TOKEN_LIMIT
