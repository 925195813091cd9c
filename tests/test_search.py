"""
Tests for semantic search, live post indexing and the reindex job.
Run with: pytest tests/test_search.py
"""

import json

import pytest

from conftest import FakeLLM, make_bot, make_registry
from parley.errors import JobAlreadyRunningError, JobNotRunningError, ParleyError
from parley.host.models import CHANNEL_DIRECT, PROP_NO_REGEN, PROP_SEARCH_QUERY, PROP_SEARCH_RESULTS, HostPost
from parley.i18n import translate
from parley.indexing.post_indexing import PostIndexer, should_index_post
from parley.indexing.reindex_job import (
    REINDEX_JOB_KEY,
    STATUS_CANCELED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    JobStatus,
    ReindexJob,
)
from parley.llm.prompts import PromptRegistry
from parley.search import RAGResult, Search, format_results
from parley.storage.backends.base import PostDocument, SearchResult
from parley.storage.sqlite_store import SQLiteStore
from parley.streaming import StreamingCoordinator


class FakeEmbeddingSearch:
    """Records stored documents and answers searches from a fixed list."""

    def __init__(self, results=None, fail_store=False):
        self.results = results or []
        self.fail_store = fail_store
        self.stored = []
        self.deleted = []
        self.cleared = 0
        self.queries = []

    async def store(self, docs):
        if self.fail_store:
            raise RuntimeError("embedding service down")
        self.stored.extend(docs)

    async def search(self, query, opts):
        self.queries.append((query, opts))
        return list(self.results)

    async def delete(self, post_ids):
        self.deleted.extend(post_ids)

    async def clear(self):
        self.cleared += 1


def _result(post_id="p1", channel_id="chan1", user_id="user2", content="deploy is friday", **kwargs):
    return SearchResult(
        document=PostDocument(post_id=post_id, channel_id=channel_id, user_id=user_id, content=content, **kwargs),
        score=0.9,
    )


def _search(host, embedding_search):
    return Search(host, embedding_search, PromptRegistry(), StreamingCoordinator(host))


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def test_format_results():
    text = format_results([
        RAGResult("p1", "c1", "Town Square", "u1", "bob", "hello", 0.5),
        RAGResult("p2", "c1", "Town Square", "u2", "eve", "bye", 0.4),
    ])
    assert text == "[1] bob in Town Square:\nhello\n\n[2] eve in Town Square:\nbye"


@pytest.mark.asyncio
async def test_rag_results_name_channels(host):
    host.add_channel("dm", type=CHANNEL_DIRECT, team_id="", name="user1__user2")
    search = _search(host, FakeEmbeddingSearch())
    rag = await search.convert_to_rag_results([
        _result("p1"),
        _result("p2", channel_id="dm"),
        _result("p3", channel_id="missing", user_id="ghost"),
        _result("p4", is_chunk=True, chunk_index=1, total_chunks=3),
    ])
    assert [r.channel_name for r in rag] == [
        "Town Square", "Direct Message", "Unknown Channel", "Town Square (Chunk 2 of 3)",
    ]
    assert rag[0].username == "bob"
    assert rag[2].username == "Unknown User"


@pytest.mark.asyncio
async def test_search_query_answers_inline(host):
    llm = FakeLLM(["It ships Friday."])
    bot = make_bot(host, "ai", llm)
    embedding_search = FakeEmbeddingSearch([_result()])
    search = _search(host, embedding_search)

    out = await search.search_query("user1", bot, "when do we deploy?", team_id="team1", max_results=3)

    assert out["answer"] == "It ships Friday."
    assert out["results"][0]["post_id"] == "p1"
    query, opts = embedding_search.queries[0]
    assert (query, opts.user_id, opts.limit, opts.team_id) == ("when do we deploy?", "user1", 3, "team1")
    system = llm.requests[0].posts[0].message
    assert '"when do we deploy?"' in system
    assert "[1] bob in Town Square:\ndeploy is friday" in system


@pytest.mark.asyncio
async def test_search_query_without_results(host):
    llm = FakeLLM()
    bot = make_bot(host, "ai", llm)
    out = await _search(host, FakeEmbeddingSearch()).search_query("user1", bot, "anything")
    assert out == {"answer": translate("search_no_results"), "results": []}
    assert llm.requests == []


@pytest.mark.asyncio
async def test_search_requires_configuration(host, bot):
    search = _search(host, None)
    assert not search.enabled
    with pytest.raises(ParleyError, match="not configured"):
        await search.search_query("user1", bot, "q")


@pytest.mark.asyncio
async def test_run_search_streams_into_dm(host):
    bot = make_bot(host, "ai", FakeLLM(["Friday."]))
    search = _search(host, FakeEmbeddingSearch([_result()]))

    out = await search.run_search("user1", bot, "deploy day?")
    await search.drain()

    question = host.posts[out["post_id"]]
    assert question.user_id == "user1"
    assert question.props[PROP_SEARCH_QUERY] == "true"
    assert host.channels[out["channel_id"]].type == CHANNEL_DIRECT

    answer = next(p for p in host.posts.values() if p.root_id == question.id)
    assert answer.user_id == "ai-id"
    assert answer.message == "Friday."
    assert answer.props[PROP_NO_REGEN] == "true"
    assert json.loads(answer.props[PROP_SEARCH_RESULTS])[0]["username"] == "bob"


@pytest.mark.asyncio
async def test_run_search_reports_errors_in_dm(host):
    class Broken(FakeEmbeddingSearch):
        async def search(self, query, opts):
            raise RuntimeError("index unavailable")

    bot = make_bot(host, "ai", FakeLLM())
    search = _search(host, Broken())
    out = await search.run_search("user1", bot, "deploy day?")
    await search.drain()

    answer = next(p for p in host.posts.values() if p.root_id == out["post_id"])
    assert answer.message == translate("search_error")

    with pytest.raises(ParleyError, match="empty"):
        await search.run_search("user1", bot, "")


# ---------------------------------------------------------------------------
# Live indexing
# ---------------------------------------------------------------------------

def test_should_index_post(host, bot):
    bots = make_registry(host, bot)
    channel = host.channels["chan1"]
    assert should_index_post(bots, HostPost(user_id="user1", message="hello"), channel)
    assert not should_index_post(bots, HostPost(user_id="user1", message=""), channel)
    assert not should_index_post(bots, HostPost(user_id="ai-id", message="answer"), channel)
    assert not should_index_post(bots, HostPost(user_id="user1", message="joined", type="system_join"), channel)
    assert not should_index_post(bots, HostPost(user_id="user1", message="x", delete_at=3), channel)


@pytest.mark.asyncio
async def test_bot_dms_are_not_indexed(host, bot):
    bots = make_registry(host, bot)
    dm = await host.get_direct_channel("user1", "ai-id")
    assert not should_index_post(bots, HostPost(user_id="user1", message="private question"), dm)


@pytest.mark.asyncio
async def test_post_indexer(host, bot):
    embedding_search = FakeEmbeddingSearch()
    indexer = PostIndexer(embedding_search, make_registry(host, bot))
    post = HostPost(id="p1", user_id="user1", channel_id="chan1", message="hello", create_at=42)

    assert await indexer.index_post(post, host.channels["chan1"])
    doc = embedding_search.stored[0]
    assert (doc.post_id, doc.team_id, doc.create_at, doc.content) == ("p1", "team1", 42, "hello")

    await indexer.delete_post("p1")
    assert embedding_search.deleted == ["p1"]

    assert not await PostIndexer(None, make_registry(host, bot)).index_post(post, host.channels["chan1"])
    failing = PostIndexer(FakeEmbeddingSearch(fail_store=True), make_registry(host, bot))
    assert not await failing.index_post(post, host.channels["chan1"])


# ---------------------------------------------------------------------------
# Reindex job
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path, host):
    store = SQLiteStore(str(tmp_path / "parley.db"))
    store.mirror_channel(host.channels["chan1"])
    return store


def test_job_status_dict_omits_empty_fields():
    status = JobStatus(status=STATUS_RUNNING, started_at="t0", total_rows=3)
    assert status.to_dict() == {"status": "running", "started_at": "t0", "processed_rows": 0, "total_rows": 3}
    assert JobStatus.from_dict({"status": "failed", "error": "boom"}).error == "boom"


@pytest.mark.asyncio
async def test_reindex_indexes_every_eligible_post(host, bot, db, monkeypatch):
    monkeypatch.setattr("parley.indexing.reindex_job.BATCH_SIZE", 2)
    for i in range(5):
        db.mirror_post(HostPost(id=f"p{i}", user_id="user1", channel_id="chan1", message=f"m{i}", create_at=100))
    db.mirror_post(HostPost(id="botpost", user_id="ai-id", channel_id="chan1", message="answer", create_at=200))

    embedding_search = FakeEmbeddingSearch()
    job = ReindexJob(host, embedding_search, db, make_registry(host, bot))

    started = await job.start()
    assert started.status == STATUS_RUNNING
    assert started.total_rows == 6
    await job.wait()

    assert embedding_search.cleared == 1
    assert sorted(d.post_id for d in embedding_search.stored) == [f"p{i}" for i in range(5)]
    assert all(d.create_at == 100 and d.team_id == "team1" for d in embedding_search.stored)

    final = await job.get_status()
    assert final.status == STATUS_COMPLETED
    assert final.processed_rows == 6
    assert final.completed_at


@pytest.mark.asyncio
async def test_reindex_only_one_job(host, bot, db):
    host.kv[REINDEX_JOB_KEY] = JobStatus(status=STATUS_RUNNING, started_at="t0").to_dict()
    job = ReindexJob(host, FakeEmbeddingSearch(), db, make_registry(host, bot))
    with pytest.raises(JobAlreadyRunningError) as exc:
        await job.start()
    assert exc.value.status.started_at == "t0"


@pytest.mark.asyncio
async def test_reindex_cancel(host, bot, db):
    job = ReindexJob(host, FakeEmbeddingSearch(), db, make_registry(host, bot))
    with pytest.raises(JobNotRunningError):
        await job.cancel()

    host.kv[REINDEX_JOB_KEY] = JobStatus(status=STATUS_RUNNING).to_dict()
    canceled = await job.cancel()
    assert canceled.status == STATUS_CANCELED
    assert host.kv[REINDEX_JOB_KEY]["status"] == STATUS_CANCELED


@pytest.mark.asyncio
async def test_reindex_stops_when_canceled(host, bot, db):
    db.mirror_post(HostPost(id="p1", user_id="user1", channel_id="chan1", message="m", create_at=1))
    embedding_search = FakeEmbeddingSearch()
    job = ReindexJob(host, embedding_search, db, make_registry(host, bot))

    status = JobStatus(status=STATUS_RUNNING)
    host.kv[REINDEX_JOB_KEY] = JobStatus(status=STATUS_CANCELED).to_dict()
    await job.run(status)

    assert embedding_search.stored == []
    assert host.kv[REINDEX_JOB_KEY]["status"] == STATUS_CANCELED


@pytest.mark.asyncio
async def test_reindex_cancel_during_batch_is_not_overwritten(host, bot, db, monkeypatch):
    monkeypatch.setattr("parley.indexing.reindex_job.BATCH_SIZE", 1)
    monkeypatch.setattr("parley.indexing.reindex_job.PROGRESS_EVERY", 1)
    db.mirror_post(HostPost(id="p1", user_id="user1", channel_id="chan1", message="m", create_at=1))
    job = ReindexJob(host, None, db, make_registry(host, bot))

    class CancelingSearch(FakeEmbeddingSearch):
        async def store(self, docs):
            await super().store(docs)
            await job.cancel()

    job.search = CancelingSearch()
    await job.start()
    await job.wait()

    final = await job.get_status()
    assert final.status == STATUS_CANCELED
    assert final.processed_rows == 0
    assert [d.post_id for d in job.search.stored] == ["p1"]


@pytest.mark.asyncio
async def test_reindex_store_failure_marks_job_failed(host, bot, db):
    db.mirror_post(HostPost(id="p1", user_id="user1", channel_id="chan1", message="m", create_at=1))
    job = ReindexJob(host, FakeEmbeddingSearch(fail_store=True), db, make_registry(host, bot))
    await job.start()
    await job.wait()

    final = await job.get_status()
    assert final.status == STATUS_FAILED
    assert "Failed to store documents" in final.error


@pytest.mark.asyncio
async def test_reindex_requires_search(host, bot, db):
    with pytest.raises(ParleyError, match="not configured"):
        await ReindexJob(host, None, db, make_registry(host, bot)).start()
