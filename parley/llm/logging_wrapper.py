"""
LLM trace wrapper: logs every rendered request before it is sent.
Enabled per deployment with `enable_llm_trace: true`.
"""

from __future__ import annotations

import logging

from parley.backends.base import LanguageModel
from parley.llm.models import CompletionRequest
from parley.llm.stream import TextStream

logger = logging.getLogger(__name__)


class LanguageModelLogWrapper(LanguageModel):
    def __init__(self, wrapped: LanguageModel, log: logging.Logger | None = None):
        self.wrapped = wrapped
        self.log = log or logger

    def _log_input(self, request: CompletionRequest, opts: dict) -> None:
        self.log.info("LLM call (opts=%s):\n%s", opts or {}, request)

    async def chat_completion(self, request: CompletionRequest, **opts) -> TextStream:
        self._log_input(request, opts)
        return await self.wrapped.chat_completion(request, **opts)

    async def chat_completion_no_stream(self, request: CompletionRequest, **opts) -> str:
        self._log_input(request, opts)
        return await self.wrapped.chat_completion_no_stream(request, **opts)

    def count_tokens(self, text: str) -> int:
        return self.wrapped.count_tokens(text)

    def input_token_limit(self) -> int:
        return self.wrapped.input_token_limit()
