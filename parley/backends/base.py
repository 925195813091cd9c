"""
Base language model abstraction.
Every provider adapter implements this interface so bots, analysis
pipelines and the truncation wrapper can treat them uniformly.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
from dataclasses import dataclass

from parley.llm.models import CompletionRequest
from parley.llm.stream import TextStream

logger = logging.getLogger(__name__)

SERVICE_OPENAI = "openai"
SERVICE_OPENAI_COMPATIBLE = "openaicompatible"
SERVICE_AZURE = "azure"
SERVICE_ANTHROPIC = "anthropic"

SERVICE_TYPES = (SERVICE_OPENAI, SERVICE_OPENAI_COMPATIBLE, SERVICE_AZURE, SERVICE_ANTHROPIC)

DEFAULT_STREAMING_TIMEOUT_SECONDS = 10


@dataclass
class ServiceConfig:
    """Connection settings for one LLM service."""
    type: str = ""
    api_key: str = ""
    api_url: str = ""
    org_id: str = ""
    default_model: str = ""
    input_token_limit: int = 0
    output_token_limit: int = 0
    streaming_timeout_seconds: int = 0
    send_user_id: bool = False
    embedding_model: str = ""
    embedding_dimensions: int = 0

    @classmethod
    def from_dict(cls, data: dict | None) -> "ServiceConfig":
        data = data or {}
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    @property
    def streaming_timeout(self) -> float:
        return float(self.streaming_timeout_seconds or DEFAULT_STREAMING_TIMEOUT_SECONDS)


@dataclass
class LanguageModelOptions:
    """Per-call overrides recognised by every adapter."""
    model: str = ""
    max_generated_tokens: int = 0
    enable_vision: bool = False
    json_output_format: bool = False

    def merged(self, **overrides) -> "LanguageModelOptions":
        unknown = set(overrides) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise TypeError(f"Unknown language model options: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **values)


class LanguageModel(abc.ABC):
    """
    Abstract chat model.

    chat_completion() starts a generation and returns immediately with a
    TextStream; chat_completion_no_stream() drains that same stream so the
    two paths behave identically.
    """

    @abc.abstractmethod
    async def chat_completion(self, request: CompletionRequest, **opts) -> TextStream:
        """
        Start a streaming completion.
        opts: model, max_generated_tokens, enable_vision, json_output_format.
        """
        ...

    async def chat_completion_no_stream(self, request: CompletionRequest, **opts) -> str:
        stream = await self.chat_completion(request, **opts)
        return await stream.read_all()

    @abc.abstractmethod
    def count_tokens(self, text: str) -> int:
        """Approximate token count; monotone in text length."""
        ...

    @abc.abstractmethod
    def input_token_limit(self) -> int:
        """Largest prompt the model accepts, in tokens."""
        ...


class EmbeddingProvider(abc.ABC):
    """Turns text into vectors for the search index."""

    @abc.abstractmethod
    async def create_embedding(self, text: str) -> list[float]:
        ...

    @abc.abstractmethod
    async def batch_create_embeddings(self, texts: list[str]) -> list[list[float]]:
        """One upstream call for many inputs; output order matches input."""
        ...

    @abc.abstractmethod
    def dimensions(self) -> int:
        ...
