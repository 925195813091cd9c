"""
EmbeddingSearch: chunking + embedding facade over a VectorStore.

Owns the chunking policy and the embedding provider; the store only
sees finished vectors. All chunks of a store() call are embedded in a
single upstream request.
"""

import dataclasses
import logging

from parley.backends.base import EmbeddingProvider
from parley.chunking import ChunkingOptions, chunk_text
from parley.storage.backends import PostDocument, SearchOptions, SearchResult, VectorStore

logger = logging.getLogger(__name__)


class EmbeddingSearch:
    def __init__(self, store: VectorStore, provider: EmbeddingProvider, options: ChunkingOptions | None = None):
        self.store_backend = store
        self.provider = provider
        self.options = options or ChunkingOptions()
        logger.info(
            "EmbeddingSearch initialised (store=%s, provider=%s, strategy=%s)",
            type(store).__name__,
            type(provider).__name__,
            self.options.chunking_strategy,
        )

    def set_chunking_options(self, options: ChunkingOptions):
        self.options = options

    async def store(self, docs: list[PostDocument]) -> None:
        chunked: list[PostDocument] = []
        for doc in docs:
            for chunk in chunk_text(doc.content, self.options):
                chunked.append(dataclasses.replace(
                    doc,
                    content=chunk.content,
                    is_chunk=chunk.is_chunk,
                    chunk_index=chunk.chunk_index,
                    total_chunks=chunk.total_chunks,
                ))
        if not chunked:
            return

        embeddings = await self.provider.batch_create_embeddings([d.content for d in chunked])
        self.store_backend.store(chunked, embeddings)
        logger.debug("Stored %d rows for %d posts", len(chunked), len(docs))

    async def search(self, query: str, opts: SearchOptions) -> list[SearchResult]:
        embedding = await self.provider.create_embedding(query)
        return self.store_backend.search(embedding, opts)

    async def delete(self, post_ids: list[str]) -> None:
        self.store_backend.delete(post_ids)

    async def clear(self) -> None:
        self.store_backend.clear()
