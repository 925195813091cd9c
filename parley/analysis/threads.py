"""
Thread analysis: summaries, action items and open questions.

Threads builds the two-turn prompt (analysis system prompt + thread_user
with the formatted thread) and starts a completion. ThreadAnalysis wraps
that into the user-facing flow: the answer is streamed into a fresh DM
between the bot and the requester, and the DM is titled.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from parley.backends.base import LanguageModel
from parley.conversations.formatting import format_thread
from parley.errors import ParleyError
from parley.host.base import HostPlatform, get_thread_data
from parley.host.models import PROP_PROMPT_TYPE, PROP_REFERENCED_THREAD, Channel, HostPost
from parley.i18n import format_analysis_post_message, translate
from parley.llm.context import LLMContext
from parley.llm.models import CompletionRequest, Post, PostRole
from parley.llm.prompts import (
    PROMPT_FIND_ACTION_ITEMS,
    PROMPT_FIND_OPEN_QUESTIONS,
    PROMPT_SUMMARIZE_THREAD,
    PROMPT_THREAD_USER,
    PromptRegistry,
)
from parley.llm.stream import TextStream

if TYPE_CHECKING:
    from parley.bots.models import Bot
    from parley.conversations.conversations import Conversations

logger = logging.getLogger(__name__)

ANALYSIS_SUMMARIZE = "summarize_thread"
ANALYSIS_ACTION_ITEMS = "action_items"
ANALYSIS_OPEN_QUESTIONS = "open_questions"

_PROMPTS = {
    ANALYSIS_SUMMARIZE: PROMPT_SUMMARIZE_THREAD,
    ANALYSIS_ACTION_ITEMS: PROMPT_FIND_ACTION_ITEMS,
    ANALYSIS_OPEN_QUESTIONS: PROMPT_FIND_OPEN_QUESTIONS,
}

_TITLES = {
    ANALYSIS_SUMMARIZE: "thread_summary_title",
    ANALYSIS_ACTION_ITEMS: "action_items_title",
    ANALYSIS_OPEN_QUESTIONS: "open_questions_title",
}


def prompt_for_analysis(analysis_type: str) -> str:
    try:
        return _PROMPTS[analysis_type]
    except KeyError:
        raise ParleyError(f"invalid analysis type: {analysis_type}") from None


class Threads:
    def __init__(self, llm: LanguageModel, prompts: PromptRegistry, host: HostPlatform):
        self.llm = llm
        self.prompts = prompts
        self.host = host

    async def summarize(self, root_id: str, context: LLMContext) -> TextStream:
        return await self.analyze(root_id, context, PROMPT_SUMMARIZE_THREAD)

    async def find_action_items(self, root_id: str, context: LLMContext) -> TextStream:
        return await self.analyze(root_id, context, PROMPT_FIND_ACTION_ITEMS)

    async def find_open_questions(self, root_id: str, context: LLMContext) -> TextStream:
        return await self.analyze(root_id, context, PROMPT_FIND_OPEN_QUESTIONS)

    async def analyze(self, post_id: str, context: LLMContext, prompt_name: str) -> TextStream:
        try:
            posts = await self._initial_posts(post_id, context, prompt_name)
        except Exception as e:
            raise ParleyError(f"failed to create initial posts: {e}") from e
        return await self.llm.chat_completion(CompletionRequest(posts=posts, context=context))

    async def follow_up_analyze(self, post_id: str, context: LLMContext, prompt_name: str) -> list[Post]:
        """The analysis turns, for continuing a conversation about the thread."""
        return await self._initial_posts(post_id, context, prompt_name)

    async def _initial_posts(self, post_id: str, context: LLMContext, prompt_name: str) -> list[Post]:
        thread = await get_thread_data(self.host, post_id)
        context.parameters = {"Thread": format_thread(thread)}
        system = self.prompts.format(prompt_name, context)
        user = self.prompts.format(PROMPT_THREAD_USER, context)
        return [
            Post(role=PostRole.SYSTEM, message=system),
            Post(role=PostRole.USER, message=user),
        ]


class ThreadAnalysis:
    """Runs an analysis and streams it into a new DM with the requester."""

    def __init__(self, host: HostPlatform, prompts: PromptRegistry, streaming, context_factory,
                 conversations: "Conversations"):
        self.host = host
        self.prompts = prompts
        self.streaming = streaming
        self.context_factory = context_factory
        self.conversations = conversations

    async def make_analysis_post(self, locale: str, post_id: str, analysis_type: str) -> HostPost:
        settings = await self.host.get_server_settings()
        post = HostPost(
            message=format_analysis_post_message(locale, post_id, analysis_type, settings.get("site_url", "")),
        )
        post.add_prop(PROP_REFERENCED_THREAD, post_id)
        post.add_prop(PROP_PROMPT_TYPE, analysis_type)
        return post

    async def analyze_thread(
        self, user_id: str, bot: "Bot", post: HostPost, channel: Channel, analysis_type: str
    ) -> HostPost:
        prompt_name = prompt_for_analysis(analysis_type)
        user = await self.host.get_user(user_id)
        context = await self.context_factory.build_for_user_request(bot, user, channel)

        stream = await Threads(bot.llm, self.prompts, self.host).analyze(post.id, context, prompt_name)

        analysis_post = await self.make_analysis_post(user.locale, post.id, analysis_type)
        created = await self.streaming.stream_to_new_dm(bot.user_id, stream, user.id, analysis_post, post.id)

        title = translate(_TITLES.get(analysis_type, "thread_summary_title"), user.locale)
        self.conversations.save_title_async(created.id, title)
        return created
