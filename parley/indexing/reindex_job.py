"""
Full rebuild of the post embedding index.

One job per cluster. Its state is a single JSON document in the host KV
store under REINDEX_JOB_KEY; every node reads it to decide whether a job
is running, and the worker re-reads it between batches to notice a
cancel request.

The worker walks the Posts table in (create_at, id) order with a keyset
cursor so posts sharing a timestamp are neither skipped nor repeated.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from parley.errors import JobAlreadyRunningError, JobNotRunningError, ParleyError
from parley.host.base import HostPlatform
from parley.host.models import POST_TYPE_DEFAULT, HostPost
from parley.indexing.post_indexing import should_index_post
from parley.storage.backends.base import PostDocument
from parley.storage.embedding_search import EmbeddingSearch
from parley.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

REINDEX_JOB_KEY = "reindex_job_status"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELED = "canceled"

BATCH_SIZE = 100
PROGRESS_EVERY = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobStatus:
    status: str = ""
    error: str = ""
    started_at: str = ""
    completed_at: str = ""
    processed_rows: int = 0
    total_rows: int = 0

    def to_dict(self) -> dict:
        d = {
            "status": self.status,
            "started_at": self.started_at,
            "processed_rows": self.processed_rows,
            "total_rows": self.total_rows,
        }
        if self.error:
            d["error"] = self.error
        if self.completed_at:
            d["completed_at"] = self.completed_at
        return d

    @classmethod
    def from_dict(cls, d: dict | None) -> "JobStatus":
        d = d or {}
        return cls(
            status=d.get("status", ""),
            error=d.get("error", ""),
            started_at=d.get("started_at", ""),
            completed_at=d.get("completed_at", ""),
            processed_rows=int(d.get("processed_rows", 0)),
            total_rows=int(d.get("total_rows", 0)),
        )


class ReindexJob:
    def __init__(self, host: HostPlatform, search: EmbeddingSearch | None, store: SQLiteStore, bots):
        self.host = host
        self.search = search
        self.store = store
        self.bots = bots
        self._task: asyncio.Task | None = None

    async def get_status(self) -> JobStatus:
        return JobStatus.from_dict(await self.host.kv_get(REINDEX_JOB_KEY))

    async def _save(self, status: JobStatus) -> bool:
        """Write the worker's status. A canceled job is never overwritten."""
        if await self._canceled():
            return False
        try:
            await self.host.kv_set(REINDEX_JOB_KEY, status.to_dict())
        except Exception as e:
            logger.error("Failed to save job status: %s", e)
        return True

    async def start(self) -> JobStatus:
        if self.search is None:
            raise ParleyError("search functionality is not configured")

        current = await self.get_status()
        if current.status == STATUS_RUNNING:
            raise JobAlreadyRunningError(current)

        try:
            total = self.store.count_posts()
        except Exception as e:
            logger.warning("Failed to get post count for progress tracking: %s", e)
            total = 0

        status = JobStatus(status=STATUS_RUNNING, started_at=_now(), total_rows=total)
        await self.host.kv_set(REINDEX_JOB_KEY, status.to_dict())

        self._task = asyncio.create_task(self._run_guarded(status))
        return status

    async def cancel(self) -> JobStatus:
        status = await self.get_status()
        if status.status != STATUS_RUNNING:
            raise JobNotRunningError()
        status.status = STATUS_CANCELED
        status.completed_at = _now()
        await self.host.kv_set(REINDEX_JOB_KEY, status.to_dict())
        return status

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run_guarded(self, status: JobStatus) -> None:
        try:
            await self.run(status)
        except Exception as e:
            logger.exception("Reindex job crashed")
            await self._fail(status, f"Job panicked: {e}")

    async def _fail(self, status: JobStatus, message: str) -> None:
        status.status = STATUS_FAILED
        status.error = message
        status.completed_at = _now()
        await self._save(status)

    async def _canceled(self) -> bool:
        try:
            current = await self.get_status()
        except Exception as e:
            logger.debug("Could not read job status: %s", e)
            return False
        return current.status == STATUS_CANCELED

    async def run(self, status: JobStatus) -> None:
        try:
            await self.search.clear()
        except Exception as e:
            await self._fail(status, f"Failed to clear search index: {e}")
            return

        last_create_at, last_id = 0, ""
        processed = 0
        last_saved = 0

        while True:
            if await self._canceled():
                logger.warning("Reindex job was canceled")
                return

            try:
                rows = self.store.get_posts_batch(last_create_at, last_id, BATCH_SIZE)
            except Exception as e:
                await self._fail(status, f"Failed to fetch posts: {e}")
                return
            if not rows:
                break

            docs = []
            for row in rows:
                channel = row.channel()
                post = HostPost(
                    id=row.id,
                    user_id=row.user_id,
                    channel_id=row.channel_id,
                    message=row.message,
                    type=POST_TYPE_DEFAULT,
                    create_at=row.create_at,
                )
                if not should_index_post(self.bots, post, channel):
                    continue
                docs.append(PostDocument(
                    post_id=row.id,
                    create_at=row.create_at,
                    team_id=row.team_id,
                    channel_id=row.channel_id,
                    user_id=row.user_id,
                    content=row.message,
                ))

            if docs:
                try:
                    await self.search.store(docs)
                except Exception as e:
                    await self._fail(status, f"Failed to store documents: {e}")
                    return

            processed += len(rows)
            status.processed_rows = processed
            last_create_at, last_id = rows[-1].create_at, rows[-1].id

            if processed >= last_saved + PROGRESS_EVERY:
                if not await self._save(status):
                    logger.warning("Reindex job was canceled")
                    return
                logger.info("Reindexing progress: %d of ~%d", processed, status.total_rows)
                last_saved = processed

        status.status = STATUS_COMPLETED
        status.completed_at = _now()
        if not await self._save(status):
            logger.warning("Reindex job was canceled")
            return
        logger.info("Reindexing completed: %d posts processed", processed)
