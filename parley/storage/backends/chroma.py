"""
ChromaVectorStore: ChromaDB implementation of VectorStore.

Wraps chromadb.PersistentClient. Chroma cannot join against the host's
membership tables, so permission filtering is done by restricting the
`where` clause to the channel IDs the user can currently read (looked up
through `membership`, normally the SQLiteStore).

Thread safety: PersistentClient is not thread-safe by default, so every
collection operation is serialised through a threading.Lock.
"""

import logging
import threading
from pathlib import Path
from typing import Protocol

import chromadb

from .base import PostDocument, SearchOptions, SearchResult, VectorStore

logger = logging.getLogger(__name__)

COLLECTION_NAME = "llm_posts_embeddings"


class ChannelMembership(Protocol):
    def get_accessible_channel_ids(self, user_id: str) -> list[str]:
        ...


def _where(conditions: list[dict]) -> dict:
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


class ChromaVectorStore(VectorStore):
    """ChromaDB-backed vector storage (thread-safe)."""

    def __init__(self, path: str, membership: ChannelMembership):
        chroma_path = Path(path)
        chroma_path.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._membership = membership
        self._client = chromadb.PersistentClient(path=str(chroma_path))
        self._collection = self._open_collection()
        logger.info("ChromaVectorStore initialised (path=%s, thread-safe)", chroma_path)

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=COLLECTION_NAME,
            metadata={"hnsw:space": "cosine"},
        )

    # ------------------------------------------------------------------
    # VectorStore interface
    # ------------------------------------------------------------------

    def store(self, docs: list[PostDocument], embeddings: list[list[float]]) -> None:
        if not docs:
            return
        with self._lock:
            self._collection.upsert(
                ids=[d.row_id for d in docs],
                embeddings=embeddings,
                documents=[d.content for d in docs],
                metadatas=[
                    {
                        "post_id": d.post_id,
                        "team_id": d.team_id,
                        "channel_id": d.channel_id,
                        "user_id": d.user_id,
                        "created_at": d.create_at,
                        "is_chunk": d.is_chunk,
                        "chunk_index": d.chunk_index,
                        "total_chunks": d.total_chunks,
                    }
                    for d in docs
                ],
            )

    def search(self, embedding: list[float], opts: SearchOptions) -> list[SearchResult]:
        if not opts.user_id:
            raise ValueError("user ID is required to validate permissions")

        channel_ids = self._membership.get_accessible_channel_ids(opts.user_id)
        if opts.channel_id:
            channel_ids = [c for c in channel_ids if c == opts.channel_id]
        if not channel_ids:
            return []

        conditions: list[dict] = [{"channel_id": {"$in": channel_ids}}]
        if opts.team_id:
            conditions.append({"team_id": opts.team_id})
        if opts.created_after:
            conditions.append({"created_at": {"$gt": opts.created_after}})
        if opts.created_before:
            conditions.append({"created_at": {"$lt": opts.created_before}})

        with self._lock:
            total = self._collection.count()
            if total == 0:
                return []
            n_results = min(opts.limit, total) if opts.limit > 0 else total
            raw = self._collection.query(
                query_embeddings=[embedding],
                n_results=n_results,
                where=_where(conditions),
                include=["documents", "metadatas", "distances"],
            )

        results = []
        docs = raw.get("documents", [[]])[0]
        metas = raw.get("metadatas", [[]])[0]
        dists = raw.get("distances", [[]])[0]
        for content, meta, dist in zip(docs, metas, dists):
            score = max(0.0, 1.0 - float(dist))
            if score < opts.min_score:
                continue
            doc = PostDocument(
                post_id=meta.get("post_id", ""),
                create_at=int(meta.get("created_at", 0)),
                team_id=meta.get("team_id", ""),
                channel_id=meta.get("channel_id", ""),
                user_id=meta.get("user_id", ""),
                content=content,
                is_chunk=bool(meta.get("is_chunk", False)),
                chunk_index=int(meta.get("chunk_index", 0)),
                total_chunks=int(meta.get("total_chunks", 0)),
            )
            results.append(SearchResult(document=doc, score=score))
        return results

    def delete(self, post_ids: list[str]) -> None:
        if not post_ids:
            return
        with self._lock:
            self._collection.delete(where={"post_id": {"$in": list(post_ids)}})

    def clear(self) -> None:
        with self._lock:
            self._client.delete_collection(COLLECTION_NAME)
            self._collection = self._open_collection()
        logger.info("Cleared chroma collection %s", COLLECTION_NAME)
