"""
Tests for the SQLite store, the vector stores, embedding search and chunking.
Uses a temp database for each test.
Run with: pytest tests/test_storage.py
"""

import pytest

from parley.backends.base import EmbeddingProvider
from parley.chunking import ChunkingOptions, chunk_text, split_plaintext_on_sentences
from parley.host.models import Channel, HostPost
from parley.storage.backends import PostDocument, SearchOptions, VectorStore, make_vector_store
from parley.storage.backends.chroma import ChromaVectorStore
from parley.storage.backends.sqlvec import SQLVectorStore
from parley.storage.embedding_search import EmbeddingSearch
from parley.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


@pytest.fixture
def membership(store):
    """u1 reads c1 and c3; c3 is archived. Nobody but u2 reads c2."""
    store.mirror_channel(Channel(id="c1", team_id="t1", name="general"))
    store.mirror_channel(Channel(id="c2", team_id="t1", name="secret", type="P"))
    store.mirror_channel(Channel(id="c3", team_id="t2", name="old", delete_at=5))
    store.add_channel_member("c1", "u1")
    store.add_channel_member("c3", "u1")
    store.add_channel_member("c2", "u2")
    return store


def _doc(post_id, channel_id="c1", content="text", create_at=1000, **kwargs):
    return PostDocument(post_id=post_id, channel_id=channel_id, team_id="t1", user_id="author",
                        content=content, create_at=create_at, **kwargs)


# ---------------------------------------------------------------------------
# SQLiteStore
# ---------------------------------------------------------------------------

def test_titles_upsert_and_delete(store):
    store.save_title("root1", "First")
    store.save_title("root1", "Renamed")
    assert store.get_title("root1") == "Renamed"
    store.delete_title("root1")
    assert store.get_title("root1") == ""


def test_accessible_channels_skip_deleted(membership):
    assert membership.get_accessible_channel_ids("u1") == ["c1"]
    membership.remove_channel_member("c1", "u1")
    assert membership.get_accessible_channel_ids("u1") == []


def test_ai_threads_newest_first_with_titles(store):
    store.mirror_post(HostPost(id="a", channel_id="dm1", create_at=100, update_at=150))
    store.mirror_post(HostPost(id="b", channel_id="dm1", create_at=200, update_at=250))
    store.mirror_post(HostPost(id="reply", channel_id="dm1", root_id="a", create_at=300))
    store.mirror_post(HostPost(id="gone", channel_id="dm1", create_at=400, delete_at=401))
    store.mirror_post(HostPost(id="other", channel_id="dm2", create_at=500))
    store.save_title("a", "About A")

    threads = store.get_ai_threads(["dm1"])
    assert [(t.id, t.title) for t in threads] == [("b", ""), ("a", "About A")]
    assert threads[1].to_dict()["updated_at"] == 150

    assert [t.id for t in store.get_ai_threads(["dm1"], offset=1, per_page=1)] == ["a"]
    assert store.get_ai_threads([]) == []


def test_reindex_cursor_and_count(membership):
    store = membership
    store.mirror_post(HostPost(id="p1", channel_id="c1", message="one", create_at=10))
    store.mirror_post(HostPost(id="p3", channel_id="c1", message="three", create_at=20))
    store.mirror_post(HostPost(id="p2", channel_id="c2", message="two", create_at=20))
    store.mirror_post(HostPost(id="sys", channel_id="c1", message="joined", type="system_join", create_at=30))
    store.mirror_post(HostPost(id="empty", channel_id="c1", message="", create_at=40))
    store.mirror_post(HostPost(id="del", channel_id="c1", message="x", create_at=50, delete_at=51))

    assert store.count_posts() == 3

    first = store.get_posts_batch(0, "", 2)
    assert [p.id for p in first] == ["p1", "p2"]
    assert first[1].channel() == Channel(id="c2", type="P", team_id="t1", name="secret")

    rest = store.get_posts_batch(first[-1].create_at, first[-1].id, 2)
    assert [p.id for p in rest] == ["p3"]
    assert store.get_posts_batch(20, "p3", 2) == []


def test_first_post_after_range(store):
    for i, ts in enumerate([100, 200, 300]):
        store.mirror_post(HostPost(id=f"p{i}", channel_id="c1", message="m", create_at=ts))
    assert store.get_first_post_after_time_range_id("c1", 150) == "p1"
    assert store.get_first_post_after_time_range_id("c1", 300) == ""
    assert store.get_first_post_after_time_range_id("c9", 0) == ""


# ---------------------------------------------------------------------------
# SQLVectorStore
# ---------------------------------------------------------------------------

@pytest.fixture
def sqlvec(membership, tmp_path):
    return SQLVectorStore(str(tmp_path / "test.db"), dimensions=2)


def test_sqlvec_search_ranks_and_filters(sqlvec):
    sqlvec.store(
        [_doc("p1", content="close"), _doc("p2", content="far"), _doc("p3", channel_id="c2"),
         _doc("p4", channel_id="c3")],
        [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 0.0]],
    )
    results = sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1"))
    assert [r.document.post_id for r in results] == ["p1", "p2"]
    assert results[0].score == pytest.approx(1.0)
    assert results[1].score == 0.0

    strict = sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1", min_score=0.5))
    assert [r.document.post_id for r in strict] == ["p1"]

    assert sqlvec.search([1.0, 0.0], SearchOptions(user_id="u2"))[0].document.post_id == "p3"


def test_sqlvec_filters_and_limit(sqlvec):
    sqlvec.store(
        [_doc("old", create_at=100), _doc("new", create_at=900)],
        [[1.0, 0.0], [0.9, 0.1]],
    )
    after = sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1", created_after=500))
    assert [r.document.post_id for r in after] == ["new"]
    before = sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1", created_before=500))
    assert [r.document.post_id for r in before] == ["old"]
    limited = sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1", limit=1))
    assert [r.document.post_id for r in limited] == ["old"]
    assert sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1", team_id="t9")) == []


def test_sqlvec_requires_user(sqlvec):
    with pytest.raises(ValueError):
        sqlvec.search([1.0, 0.0], SearchOptions())


def test_sqlvec_rejects_wrong_dimensions(sqlvec):
    with pytest.raises(ValueError):
        sqlvec.store([_doc("p1")], [[1.0, 0.0, 0.0]])
    with pytest.raises(ValueError):
        sqlvec.store([_doc("p1")], [])


def test_sqlvec_upsert_delete_and_clear(sqlvec):
    chunks = [_doc("long", content=f"part {i}", is_chunk=True, chunk_index=i, total_chunks=2) for i in range(2)]
    sqlvec.store([_doc("p1", content="v1")] + chunks, [[1.0, 0.0]] * 3)
    sqlvec.store([_doc("p1", content="v2")], [[1.0, 0.0]])

    results = sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1"))
    contents = sorted(r.document.content for r in results)
    assert contents == ["part 0", "part 1", "v2"]
    chunk = next(r.document for r in results if r.document.post_id == "long")
    assert chunk.is_chunk and chunk.total_chunks == 2

    sqlvec.delete(["long"])
    assert [r.document.post_id for r in sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1"))] == ["p1"]
    sqlvec.clear()
    assert sqlvec.search([1.0, 0.0], SearchOptions(user_id="u1")) == []


def test_make_vector_store(tmp_path):
    store = make_vector_store("sqlvec", db_path=str(tmp_path / "v.db"), dimensions=3)
    assert isinstance(store, SQLVectorStore)
    with pytest.raises(ValueError, match="Unknown vector store"):
        make_vector_store("pinecone")


# ---------------------------------------------------------------------------
# ChromaVectorStore
# ---------------------------------------------------------------------------

def test_chroma_permission_filtered_search(membership, tmp_path):
    chroma = ChromaVectorStore(str(tmp_path / "chroma"), membership)
    chroma.store(
        [_doc("p1", content="close"), _doc("p2", content="far"), _doc("p3", channel_id="c2")],
        [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]],
    )

    results = chroma.search([1.0, 0.0], SearchOptions(user_id="u1"))
    assert [r.document.post_id for r in results] == ["p1", "p2"]
    assert results[0].score == pytest.approx(1.0, abs=1e-3)
    assert results[0].document.content == "close"

    assert chroma.search([1.0, 0.0], SearchOptions(user_id="nobody")) == []
    with pytest.raises(ValueError):
        chroma.search([1.0, 0.0], SearchOptions())

    chroma.delete(["p1"])
    assert [r.document.post_id for r in chroma.search([1.0, 0.0], SearchOptions(user_id="u1"))] == ["p2"]
    chroma.clear()
    assert chroma.search([1.0, 0.0], SearchOptions(user_id="u1")) == []


# ---------------------------------------------------------------------------
# EmbeddingSearch
# ---------------------------------------------------------------------------

class _CountingProvider(EmbeddingProvider):
    def __init__(self):
        self.batches = []

    async def create_embedding(self, text):
        return [float(len(text)), 1.0]

    async def batch_create_embeddings(self, texts):
        self.batches.append(list(texts))
        return [[float(len(t)), 1.0] for t in texts]

    def dimensions(self):
        return 2


class _MemoryStore(VectorStore):
    def __init__(self):
        self.rows = {}
        self.queries = []

    def store(self, docs, embeddings):
        for doc, emb in zip(docs, embeddings):
            self.rows[doc.row_id] = (doc, emb)

    def search(self, embedding, opts):
        self.queries.append((embedding, opts))
        return []

    def delete(self, post_ids):
        self.rows = {k: v for k, v in self.rows.items() if v[0].post_id not in post_ids}

    def clear(self):
        self.rows = {}


@pytest.mark.asyncio
async def test_embedding_search_chunks_in_one_batch():
    provider, backend = _CountingProvider(), _MemoryStore()
    search = EmbeddingSearch(backend, provider, ChunkingOptions(chunk_size=60, chunk_overlap=0))
    long_text = " ".join(f"Sentence number {i} is right here." for i in range(10))

    await search.store([_doc("long", content=long_text), _doc("short", content="hi")])

    assert len(provider.batches) == 1
    assert "short" in backend.rows
    chunk_ids = [k for k in backend.rows if k.startswith("long_chunk_")]
    assert len(chunk_ids) > 1
    first = backend.rows["long_chunk_0"][0]
    assert first.is_chunk and first.total_chunks == len(chunk_ids)

    await search.delete(["long"])
    assert list(backend.rows) == ["short"]


@pytest.mark.asyncio
async def test_embedding_search_embeds_query():
    provider, backend = _CountingProvider(), _MemoryStore()
    search = EmbeddingSearch(backend, provider)
    await search.search("abc", SearchOptions(user_id="u1"))
    assert backend.queries[0][0] == [3.0, 1.0]


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

def test_short_text_is_not_chunked():
    chunks = chunk_text("a short post", ChunkingOptions())
    assert len(chunks) == 1
    assert not chunks[0].is_chunk
    assert chunk_text("whatever", ChunkingOptions(chunk_size=0))[0].content == "whatever"


def test_long_text_chunks_respect_size():
    text = " ".join(f"Sentence number {i} is here." for i in range(40))
    chunks = chunk_text(text, ChunkingOptions(chunk_size=200, chunk_overlap=20))
    assert len(chunks) > 1
    assert all(len(c.content) <= 200 for c in chunks)
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert {c.total_chunks for c in chunks} == {len(chunks)}


def test_sentence_chunks_drop_the_cut_separator():
    sentences = [f"Sentence number {i} is here" for i in range(6)]
    chunks = chunk_text(". ".join(sentences), ChunkingOptions(chunk_size=30, chunk_overlap=0))
    assert [c.content for c in chunks] == sentences


def test_chunking_options_from_dict():
    opts = ChunkingOptions.from_dict({"chunk_size": "500", "chunking_strategy": "paragraphs"})
    assert opts.chunk_size == 500
    assert opts.chunk_overlap == 200
    assert opts.chunking_strategy == "paragraphs"


def test_split_plaintext_on_sentences():
    text = "First sentence here. Second sentence here. Third one."
    assert split_plaintext_on_sentences(text, 25) == [
        "First sentence here.",
        "Second sentence here.",
        "Third one.",
    ]
    assert split_plaintext_on_sentences("x" * 50, 20) == ["x" * 20, "x" * 20, "x" * 10]
