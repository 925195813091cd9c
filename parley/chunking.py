"""
Text chunking for the search index.

chunk_text() splits long posts into overlapping pieces with LangChain's
RecursiveCharacterTextSplitter; the separator list depends on the
strategy. split_plaintext_on_sentences() is the simpler splitter used to
cut meeting transcripts into model-sized pieces.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

STRATEGY_SENTENCES = "sentences"
STRATEGY_PARAGRAPHS = "paragraphs"
STRATEGY_FIXED = "fixed"

_SEPARATORS = {
    STRATEGY_SENTENCES: [". ", "! ", "? ", "\n", " ", ""],
    STRATEGY_PARAGRAPHS: ["\n\n", "\n", " ", ""],
    STRATEGY_FIXED: [" ", ""],
}


@dataclass
class ChunkingOptions:
    chunk_size: int = 1000         # characters
    chunk_overlap: int = 200       # characters shared between neighbours
    min_chunk_size: float = 0.75   # fraction of chunk_size
    chunking_strategy: str = STRATEGY_SENTENCES

    @classmethod
    def from_dict(cls, data: dict | None) -> "ChunkingOptions":
        data = data or {}
        defaults = cls()
        return cls(
            chunk_size=int(data.get("chunk_size", defaults.chunk_size)),
            chunk_overlap=int(data.get("chunk_overlap", defaults.chunk_overlap)),
            min_chunk_size=float(data.get("min_chunk_size", defaults.min_chunk_size)),
            chunking_strategy=data.get("chunking_strategy", defaults.chunking_strategy),
        )


@dataclass
class Chunk:
    content: str
    is_chunk: bool = False
    chunk_index: int = 0
    total_chunks: int = 1


def _whole(content: str) -> list[Chunk]:
    return [Chunk(content=content)]


def chunk_text(content: str, opts: ChunkingOptions) -> list[Chunk]:
    if not content.strip() or opts.chunk_size <= 0:
        return _whole(content)

    separators = _SEPARATORS.get(opts.chunking_strategy, _SEPARATORS[STRATEGY_SENTENCES])
    try:
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=opts.chunk_size,
            chunk_overlap=min(opts.chunk_overlap, max(opts.chunk_size - 1, 0)),
            separators=separators,
            keep_separator=False,
        )
        pieces = splitter.split_text(content)
    except ValueError as e:
        logger.warning("Chunking failed, indexing post whole: %s", e)
        return _whole(content)

    if len(pieces) <= 1:
        return _whole(content)

    total = len(pieces)
    return [
        Chunk(content=piece, is_chunk=True, chunk_index=i, total_chunks=total)
        for i, piece in enumerate(pieces)
    ]


def split_plaintext_on_sentences(text: str, chunk_size: int) -> list[str]:
    """
    Split text into pieces no longer than chunk_size, preferring to cut
    after '.', '!' or '?'. A cut point earlier than 3/4 of chunk_size is
    ignored and the text is cut mid-sentence instead, so the piece count
    stays within ~25% of the minimum.
    """
    chunks: list[str] = []
    lower_bound = int(chunk_size * 0.75)
    remaining = text

    while len(remaining) > chunk_size:
        window = remaining[:chunk_size - 1]
        end = max(window.rfind("."), window.rfind("!"), window.rfind("?"))
        if end == -1 or end < lower_bound:
            end = chunk_size - 1
        chunks.append(remaining[:end + 1].strip())
        remaining = remaining[end + 1:].strip()

    chunks.append(remaining)
    return chunks
