"""
Abstract base for post embedding storage.

All stores implement four primitives:
  store:  upsert documents with their embeddings
  search: permission-filtered nearest-neighbour search
  delete: remove every row (chunks included) for some post IDs
  clear:  drop the whole index

Embedding and chunking stay in EmbeddingSearch (the caller), not here.
Stores only move vectors around, but they MUST only return rows from
channels the searching user can read.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class PostDocument:
    post_id: str
    create_at: int = 0  # creation time of the post, not of the index row
    team_id: str = ""
    channel_id: str = ""
    user_id: str = ""
    content: str = ""
    is_chunk: bool = False
    chunk_index: int = 0
    total_chunks: int = 0

    @property
    def row_id(self) -> str:
        """Upsert key: the post ID, or post_id_chunk_N for chunks."""
        if self.is_chunk:
            return f"{self.post_id}_chunk_{self.chunk_index}"
        return self.post_id


@dataclass
class SearchOptions:
    user_id: str = ""  # required; results are limited to this user's channels
    limit: int = 0
    min_score: float = 0.0
    team_id: str = ""
    channel_id: str = ""
    created_after: int = 0
    created_before: int = 0


@dataclass
class SearchResult:
    document: PostDocument
    score: float


class VectorStore(ABC):
    """Abstract vector storage backend."""

    @abstractmethod
    def store(self, docs: list[PostDocument], embeddings: list[list[float]]) -> None:
        ...

    @abstractmethod
    def search(self, embedding: list[float], opts: SearchOptions) -> list[SearchResult]:
        """
        Nearest-neighbour search, most similar first.
        Raises ValueError when opts.user_id is empty.
        """
        ...

    @abstractmethod
    def delete(self, post_ids: list[str]) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...
