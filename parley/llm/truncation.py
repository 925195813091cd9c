"""
Truncation wrapper.

Wraps any LanguageModel and trims the oldest conversation turns so the
request fits the model's input budget. Headroom is left for tool schemas
and provider overhead; tiny or unknown limits clamp to MIN_TOKENS.
"""

from __future__ import annotations

import logging
import math

from parley.backends.base import LanguageModel
from parley.llm.models import CompletionRequest
from parley.llm.stream import TextStream

logger = logging.getLogger(__name__)

FUNCTIONS_TOKEN_BUDGET = 200
TOKEN_LIMIT_BUFFER_SIZE = 0.9
MIN_TOKENS = 100


def token_budget(input_token_limit: int) -> int:
    budget = math.floor((input_token_limit - FUNCTIONS_TOKEN_BUDGET) * TOKEN_LIMIT_BUFFER_SIZE)
    return max(budget, MIN_TOKENS)


class TruncationWrapper(LanguageModel):
    def __init__(self, wrapped: LanguageModel):
        self.wrapped = wrapped

    def _truncate(self, request: CompletionRequest) -> None:
        budget = token_budget(self.wrapped.input_token_limit())
        if request.truncate(budget, self.wrapped.count_tokens):
            logger.debug("Truncated conversation to %d tokens (%d posts kept)", budget, len(request.posts))

    async def chat_completion(self, request: CompletionRequest, **opts) -> TextStream:
        self._truncate(request)
        return await self.wrapped.chat_completion(request, **opts)

    async def chat_completion_no_stream(self, request: CompletionRequest, **opts) -> str:
        self._truncate(request)
        return await self.wrapped.chat_completion_no_stream(request, **opts)

    def count_tokens(self, text: str) -> int:
        return self.wrapped.count_tokens(text)

    def input_token_limit(self) -> int:
        return self.wrapped.input_token_limit()
