"""
SQLVectorStore: embeddings kept in the host SQLite database.

Vectors are stored as float32 blobs in `llm_posts_embeddings`. Search
narrows candidates in SQL (joined against Channels / ChannelMembers so
only readable rows are considered), then ranks them by L2 distance with
numpy. Score is 1 - distance, floored at 0.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

import numpy as np

from .base import PostDocument, SearchOptions, SearchResult, VectorStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS llm_posts_embeddings (
    id TEXT PRIMARY KEY,
    post_id TEXT NOT NULL,
    team_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    embedding BLOB NOT NULL,
    created_at INTEGER NOT NULL,
    is_chunk INTEGER NOT NULL DEFAULT 0,
    chunk_index INTEGER,
    total_chunks INTEGER
);

CREATE INDEX IF NOT EXISTS llm_posts_embeddings_post_id_idx
    ON llm_posts_embeddings(post_id);
CREATE INDEX IF NOT EXISTS llm_posts_embeddings_channel_idx
    ON llm_posts_embeddings(channel_id, created_at);
"""

# Above this the LIMIT is ignored, matching "no limit".
_MAX_LIMIT = 100000


class SQLVectorStore(VectorStore):
    """SQLite + numpy vector storage (thread-safe)."""

    def __init__(self, db_path: str, dimensions: int = 0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.dimensions = dimensions
        self._lock = threading.Lock()
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLVectorStore initialised (path=%s, dimensions=%d)", self.db_path, dimensions)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _encode(self, embedding: list[float]) -> bytes:
        vec = np.asarray(embedding, dtype=np.float32)
        if self.dimensions and vec.shape[0] != self.dimensions:
            raise ValueError(f"embedding has {vec.shape[0]} dimensions, expected {self.dimensions}")
        return vec.tobytes()

    # ------------------------------------------------------------------
    # VectorStore interface
    # ------------------------------------------------------------------

    def store(self, docs: list[PostDocument], embeddings: list[list[float]]) -> None:
        if len(docs) != len(embeddings):
            raise ValueError(f"{len(docs)} documents but {len(embeddings)} embeddings")
        rows = [
            (
                doc.row_id,
                doc.post_id,
                doc.team_id,
                doc.channel_id,
                doc.user_id,
                doc.content,
                self._encode(emb),
                doc.create_at,
                int(doc.is_chunk),
                doc.chunk_index if doc.is_chunk else None,
                doc.total_chunks if doc.is_chunk else None,
            )
            for doc, emb in zip(docs, embeddings)
        ]
        with self._lock, self._connect() as conn:
            conn.executemany(
                """INSERT INTO llm_posts_embeddings
                   (id, post_id, team_id, channel_id, user_id, content, embedding, created_at,
                    is_chunk, chunk_index, total_chunks)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (id) DO UPDATE SET
                     content = excluded.content,
                     embedding = excluded.embedding,
                     is_chunk = excluded.is_chunk,
                     chunk_index = excluded.chunk_index,
                     total_chunks = excluded.total_chunks""",
                rows,
            )

    def search(self, embedding: list[float], opts: SearchOptions) -> list[SearchResult]:
        if not opts.user_id:
            raise ValueError("user ID is required to validate permissions")

        sql = """SELECT e.id, e.post_id, e.team_id, e.channel_id, e.user_id, e.content,
                        e.embedding, e.created_at, e.is_chunk, e.chunk_index, e.total_chunks
                 FROM llm_posts_embeddings e
                 JOIN Channels c ON e.channel_id = c.Id
                 JOIN ChannelMembers cm ON e.channel_id = cm.ChannelId
                 WHERE cm.UserId = ? AND c.DeleteAt = 0"""
        params: list = [opts.user_id]
        if opts.team_id:
            sql += " AND e.team_id = ?"
            params.append(opts.team_id)
        if opts.channel_id:
            sql += " AND e.channel_id = ?"
            params.append(opts.channel_id)
        if opts.created_after:
            sql += " AND e.created_at > ?"
            params.append(opts.created_after)
        if opts.created_before:
            sql += " AND e.created_at < ?"
            params.append(opts.created_before)

        with self._lock, self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        if not rows:
            return []

        query = np.asarray(embedding, dtype=np.float32)
        matrix = np.stack([np.frombuffer(r["embedding"], dtype=np.float32) for r in rows])
        distances = np.linalg.norm(matrix - query, axis=1)
        order = np.argsort(distances, kind="stable")
        if 0 < opts.limit < _MAX_LIMIT:
            order = order[:opts.limit]

        results = []
        for i in order:
            score = max(0.0, 1.0 - float(distances[i]))
            if score < opts.min_score:
                continue
            r = rows[i]
            doc = PostDocument(
                post_id=r["post_id"],
                create_at=r["created_at"],
                team_id=r["team_id"],
                channel_id=r["channel_id"],
                user_id=r["user_id"],
                content=r["content"],
                is_chunk=bool(r["is_chunk"]),
                chunk_index=r["chunk_index"] or 0,
                total_chunks=r["total_chunks"] or 0,
            )
            results.append(SearchResult(document=doc, score=score))
        return results

    def delete(self, post_ids: list[str]) -> None:
        if not post_ids:
            return
        placeholders = ",".join("?" for _ in post_ids)
        with self._lock, self._connect() as conn:
            conn.execute(f"DELETE FROM llm_posts_embeddings WHERE post_id IN ({placeholders})", post_ids)

    def clear(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM llm_posts_embeddings")
        logger.info("Cleared llm_posts_embeddings")
