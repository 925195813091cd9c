"""
Vector store factory.

Usage:
    from parley.storage.backends import make_vector_store
    store = make_vector_store("sqlvec", db_path="./data/parley.db", dimensions=3072)

Adding a new store:
    1. Create parley/storage/backends/<name>.py implementing VectorStore.
    2. Add an entry to _REGISTRY below.
    3. Set  embedding_search.vector_store.type: <name>  in config.yaml.
"""

from .base import PostDocument, SearchOptions, SearchResult, VectorStore

_REGISTRY: dict[str, type[VectorStore]] = {}


def _register():
    """Lazy-import stores to avoid hard dependencies at import time."""
    if _REGISTRY:
        return
    from .chroma import ChromaVectorStore
    from .sqlvec import SQLVectorStore
    _REGISTRY["sqlvec"] = SQLVectorStore
    _REGISTRY["chromadb"] = ChromaVectorStore


def make_vector_store(store_type: str, **kwargs) -> VectorStore:
    """
    Instantiate a vector store by name.

    Args:
        store_type: Registry key ("sqlvec" or "chromadb").
        **kwargs:   Passed directly to the store constructor.

    Raises:
        ValueError: If the store type is not registered.
    """
    _register()
    cls = _REGISTRY.get(store_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown vector store: '{store_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = ["PostDocument", "SearchOptions", "SearchResult", "VectorStore", "make_vector_store"]
