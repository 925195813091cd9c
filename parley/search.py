"""
Semantic search over indexed posts, answered by a bot.

Two entry points share the same pipeline (embed the query, fetch the
nearest posts the user can read, ask the bot to answer from them):
search_query returns the answer inline, run_search posts the question and
a streamed answer into the user's DM with the bot.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass

from parley.errors import ParleyError
from parley.host.base import HostPlatform
from parley.host.models import PROP_NO_REGEN, PROP_SEARCH_QUERY, PROP_SEARCH_RESULTS, HostPost
from parley.i18n import translate
from parley.llm.context import LLMContext
from parley.llm.models import CompletionRequest, Post, PostRole
from parley.llm.prompts import PROMPT_SEARCH_SYSTEM, PromptRegistry
from parley.storage.backends.base import SearchOptions, SearchResult
from parley.storage.embedding_search import EmbeddingSearch
from parley.streaming import StreamingCoordinator, modify_post_for_bot

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 5


@dataclass
class RAGResult:
    post_id: str
    channel_id: str
    channel_name: str
    user_id: str
    username: str
    content: str
    score: float

    def to_dict(self) -> dict:
        return asdict(self)


def format_results(results: list[RAGResult]) -> str:
    """Plain-text rendering of results for the search prompt."""
    blocks = []
    for i, r in enumerate(results, start=1):
        blocks.append(f"[{i}] {r.username} in {r.channel_name}:\n{r.content}")
    return "\n\n".join(blocks)


class Search:
    def __init__(
        self,
        host: HostPlatform,
        embedding_search: EmbeddingSearch | None,
        prompts: PromptRegistry,
        streaming: StreamingCoordinator,
    ):
        self.host = host
        self.embedding_search = embedding_search
        self.prompts = prompts
        self.streaming = streaming
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.embedding_search is not None

    def _require(self) -> EmbeddingSearch:
        if self.embedding_search is None:
            raise ParleyError("search functionality is not configured")
        return self.embedding_search

    async def search(self, query: str, opts: SearchOptions) -> list[SearchResult]:
        return await self._require().search(query, opts)

    async def convert_to_rag_results(self, results: list[SearchResult]) -> list[RAGResult]:
        rag = []
        for result in results:
            doc = result.document
            try:
                channel = await self.host.get_channel(doc.channel_id)
            except Exception as e:
                logger.warning("Failed to get channel %s: %s", doc.channel_id, e)
                channel_name = "Unknown Channel"
            else:
                if channel.is_dm:
                    channel_name = "Direct Message"
                elif channel.is_group:
                    channel_name = "Group Message"
                else:
                    channel_name = channel.display_name

            try:
                username = (await self.host.get_user(doc.user_id)).username
            except Exception as e:
                logger.warning("Failed to get user %s: %s", doc.user_id, e)
                username = "Unknown User"

            if doc.is_chunk:
                channel_name += f" (Chunk {doc.chunk_index + 1} of {doc.total_chunks})"

            rag.append(RAGResult(
                post_id=doc.post_id,
                channel_id=doc.channel_id,
                channel_name=channel_name,
                user_id=doc.user_id,
                username=username,
                content=doc.content,
                score=result.score,
            ))
        return rag

    def _answer_request(self, query: str, results: list[RAGResult]) -> CompletionRequest:
        context = LLMContext()
        context.parameters = {"Query": query, "Results": format_results(results)}
        system = self.prompts.format(PROMPT_SEARCH_SYSTEM, context)
        return CompletionRequest(
            posts=[Post(role=PostRole.SYSTEM, message=system), Post(role=PostRole.USER, message=query)],
            context=context,
        )

    async def search_query(
        self,
        user_id: str,
        bot,
        query: str,
        team_id: str = "",
        channel_id: str = "",
        max_results: int = 0,
    ) -> dict:
        """Search and answer synchronously: {answer, results}."""
        self._require()
        opts = SearchOptions(
            user_id=user_id,
            limit=max_results or DEFAULT_MAX_RESULTS,
            team_id=team_id,
            channel_id=channel_id,
        )
        try:
            found = await self.search(query, opts)
        except Exception as e:
            raise ParleyError(f"search failed: {e}") from e

        results = await self.convert_to_rag_results(found)
        if not results:
            return {"answer": translate("search_no_results"), "results": []}

        try:
            answer = await bot.llm.chat_completion_no_stream(self._answer_request(query, results))
        except Exception as e:
            raise ParleyError(f"failed to generate answer: {e}") from e
        return {"answer": answer, "results": [r.to_dict() for r in results]}

    async def run_search(
        self,
        user_id: str,
        bot,
        query: str,
        team_id: str = "",
        channel_id: str = "",
        max_results: int = 0,
    ) -> dict:
        """
        Post the query into the user's DM with the bot and answer it there
        in the background. Returns the question post's IDs.
        """
        self._require()
        if not query:
            raise ParleyError("query cannot be empty")

        question = HostPost(user_id=user_id, message=query)
        question.add_prop(PROP_SEARCH_QUERY, "true")
        question = await self.host.dm(user_id, bot.user_id, question)

        task = asyncio.create_task(
            self._answer_in_dm(user_id, bot, question, query, team_id, channel_id, max_results)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return {"post_id": question.id, "channel_id": question.channel_id}

    async def _answer_in_dm(
        self,
        user_id: str,
        bot,
        question: HostPost,
        query: str,
        team_id: str,
        channel_id: str,
        max_results: int,
    ) -> None:
        response = HostPost(channel_id=question.channel_id, root_id=question.id)
        modify_post_for_bot(bot.user_id, user_id, response)
        response.add_prop(PROP_NO_REGEN, "true")
        try:
            response = await self.host.create_post(response)
        except Exception as e:
            logger.error("Error creating bot DM: %s", e)
            return

        try:
            opts = SearchOptions(
                user_id=user_id,
                limit=max_results or DEFAULT_MAX_RESULTS,
                team_id=team_id,
                channel_id=channel_id,
            )
            results = await self.convert_to_rag_results(await self.search(query, opts))
            if not results:
                response.message = translate("search_no_results")
                await self.host.update_post(response)
                return

            stream = await bot.llm.chat_completion(self._answer_request(query, results))

            response.add_prop(PROP_SEARCH_RESULTS, json.dumps([r.to_dict() for r in results]))
            await self.host.update_post(response)
        except Exception as e:
            logger.error("Error performing search: %s", e)
            response.message = translate("search_error")
            try:
                await self.host.update_post(response)
            except Exception as update_err:
                logger.error("Error updating post on error: %s", update_err)
            return

        cancelled = self.streaming.get_streaming_context(response.id)
        try:
            await self.streaming.stream_to_post(cancelled, stream, response)
        finally:
            self.streaming.finish_streaming(response.id)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
