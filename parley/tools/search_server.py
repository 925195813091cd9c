"""SearchServer tool: semantic search over the posts the user can read."""

from __future__ import annotations

import logging

from pydantic import Field

from parley.errors import ToolResolveError
from parley.host.base import HostPlatform
from parley.llm.context import LLMContext
from parley.llm.tools import Tool, ToolArgs, schema_from_model
from parley.storage.backends.base import SearchOptions, SearchResult

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 3
MAX_TERM_LENGTH = 300
RESULT_LIMIT = 10
MAX_CONTENT_LENGTH = 500

DESCRIPTION = (
    "Search the chat server the user is on for messages using semantic search. "
    "Use this tool whenever the user asks a question and you don't have the context "
    "to answer or you think your response would be more accurate with knowledge from the server"
)


class SearchServerArgs(ToolArgs):
    term: str = Field(description="The terms to search for in the server. Must be more than 3 and less than 300 characters.")


class SearchServerTool:
    def __init__(self, host: HostPlatform, search):
        self.host = host
        self.search = search

    def tool(self) -> Tool:
        return Tool(
            name="SearchServer",
            description=DESCRIPTION,
            schema=schema_from_model(SearchServerArgs),
            resolver=self.resolve,
        )

    async def resolve(self, context: LLMContext, get_args) -> str:
        args: SearchServerArgs = get_args(SearchServerArgs)

        if len(args.term) < MIN_TERM_LENGTH:
            raise ToolResolveError("search term too short")
        if len(args.term) > MAX_TERM_LENGTH:
            raise ToolResolveError("search term too long")
        if self.search is None:
            raise ToolResolveError("search is not configured")
        if context.requesting_user is None:
            raise ToolResolveError("no requesting user")

        try:
            results = await self.search.search(
                args.term, SearchOptions(user_id=context.requesting_user.id, limit=RESULT_LIMIT)
            )
        except Exception as e:
            raise ToolResolveError(f"search failed: {e}") from e
        return await self.format_results(results)

    async def format_results(self, results: list[SearchResult]) -> str:
        if not results:
            return "No relevant messages found."

        out = ["Found the following relevant messages:\n\n"]
        for i, result in enumerate(results, start=1):
            doc = result.document

            channel_name = "Unknown Channel"
            try:
                channel = await self.host.get_channel(doc.channel_id)
            except Exception as e:
                logger.debug("Channel lookup failed for %s: %s", doc.channel_id, e)
            else:
                if channel.is_dm:
                    channel_name = "Direct Message"
                elif channel.is_group:
                    channel_name = "Group Message"
                else:
                    channel_name = channel.display_name or channel.name

            username = "Unknown User"
            try:
                username = (await self.host.get_user(doc.user_id)).username
            except Exception as e:
                logger.debug("User lookup failed for %s: %s", doc.user_id, e)

            content = doc.content
            if len(content) > MAX_CONTENT_LENGTH:
                content = content[:MAX_CONTENT_LENGTH - 3] + "..."

            out.append(f"{i}. **{username}** in ~{channel_name} (Score: {result.score:.2f})\n")
            out.append(f"   {content}\n\n")
        return "".join(out)
