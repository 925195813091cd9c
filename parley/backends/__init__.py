"""
Language model and embedding provider factories.

Usage:
    from parley.backends import make_language_model
    llm = make_language_model(ServiceConfig(type="anthropic", api_key=...))

Adding a new provider:
    1. Create parley/backends/<name>.py implementing LanguageModel.
    2. Add an entry to _register() below.
    3. Use  service.type: <name>  for a bot in config.yaml.
"""

from __future__ import annotations

from parley.backends.base import (
    SERVICE_ANTHROPIC,
    SERVICE_AZURE,
    SERVICE_OPENAI,
    SERVICE_OPENAI_COMPATIBLE,
    EmbeddingProvider,
    LanguageModel,
    LanguageModelOptions,
    ServiceConfig,
)

_REGISTRY: dict[str, object] = {}


def _register():
    """Lazy-import backends to avoid import cycles at package load."""
    if _REGISTRY:
        return
    from parley.backends.anthropic import AnthropicBackend
    from parley.backends.openai_compat import OpenAIBackend

    _REGISTRY[SERVICE_OPENAI] = lambda cfg: OpenAIBackend(cfg, SERVICE_OPENAI)
    _REGISTRY[SERVICE_OPENAI_COMPATIBLE] = lambda cfg: OpenAIBackend(cfg, SERVICE_OPENAI_COMPATIBLE)
    _REGISTRY[SERVICE_AZURE] = lambda cfg: OpenAIBackend(cfg, SERVICE_AZURE)
    _REGISTRY[SERVICE_ANTHROPIC] = AnthropicBackend


def make_language_model(service: ServiceConfig) -> LanguageModel:
    """
    Instantiate the adapter for service.type.

    Raises:
        ValueError: If the service type is not registered.
    """
    _register()
    factory = _REGISTRY.get(service.type)
    if factory is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(f"Unknown LLM service type: '{service.type}'. Available: {available}")
    return factory(service)


def make_embedding_provider(cfg: dict) -> EmbeddingProvider:
    """
    Build the embedding provider from the embedding_search.embedding_provider
    config block: {type: openai|openaicompatible|ollama, parameters: {...}}.
    """
    provider_type = cfg.get("type", "")
    params = cfg.get("parameters", {}) or {}
    if provider_type in (SERVICE_OPENAI, SERVICE_OPENAI_COMPATIBLE):
        from parley.backends.openai_compat import OpenAIEmbeddings

        service = ServiceConfig.from_dict(params)
        if provider_type == SERVICE_OPENAI:
            service.api_url = ""
        return OpenAIEmbeddings(service)
    if provider_type == "ollama":
        from parley.backends.ollama import DEFAULT_OLLAMA_URL, OllamaEmbeddings

        return OllamaEmbeddings(
            model=params.get("embedding_model", "nomic-embed-text"),
            url=params.get("api_url", DEFAULT_OLLAMA_URL),
            dimensions=params.get("embedding_dimensions", 768),
        )
    raise ValueError(f"Unknown embedding provider: '{provider_type}'")


__all__ = [
    "EmbeddingProvider",
    "LanguageModel",
    "LanguageModelOptions",
    "ServiceConfig",
    "make_embedding_provider",
    "make_language_model",
]
