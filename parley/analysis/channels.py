"""
Channel interval analysis (summaries, action items, open questions over
a time range of a channel).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from parley.conversations.formatting import format_thread
from parley.errors import InvalidPresetError
from parley.host.base import HostPlatform, get_metadata_for_posts
from parley.host.models import PROP_NO_REGEN, Channel, HostPost
from parley.i18n import translate
from parley.llm.context import LLMContext
from parley.llm.models import CompletionRequest, Post, PostRole
from parley.llm.prompts import (
    PROMPT_FIND_ACTION_ITEMS,
    PROMPT_FIND_OPEN_QUESTIONS,
    PROMPT_SUMMARIZE_CHANNEL_RANGE,
    PROMPT_SUMMARIZE_CHANNEL_SINCE,
    PROMPT_THREAD_USER,
    PromptRegistry,
)
from parley.llm.stream import TextStream

if TYPE_CHECKING:
    from parley.bots.models import Bot
    from parley.conversations.conversations import Conversations
    from parley.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

POSTS_PER_PAGE = 60
MAX_POSTS = 200

PRESET_PROMPTS = {
    "summarize_unreads": PROMPT_SUMMARIZE_CHANNEL_SINCE,
    "summarize_range": PROMPT_SUMMARIZE_CHANNEL_RANGE,
    "action_items": PROMPT_FIND_ACTION_ITEMS,
    "open_questions": PROMPT_FIND_OPEN_QUESTIONS,
}

PRESET_TITLES = {
    "summarize_unreads": "summarize_unreads_title",
    "summarize_range": "summarize_channel_title",
    "action_items": "find_action_items_title",
    "open_questions": "find_open_questions_title",
}


class Channels:
    def __init__(self, llm, prompts: PromptRegistry, host: HostPlatform, store: "SQLiteStore | None" = None):
        self.llm = llm
        self.prompts = prompts
        self.host = host
        self.store = store

    async def get_posts_between(self, channel_id: str, start_time: int, end_time: int) -> list[HostPost]:
        """
        Posts with start_time <= create_at <= end_time, oldest first,
        capped at MAX_POSTS (the newest ones win).
        """
        anchor = ""
        if self.store is not None:
            anchor = self.store.get_first_post_after_time_range_id(channel_id, end_time)

        result: list[HostPost] = []
        page = 0
        while len(result) < MAX_POSTS:
            batch = await self.host.get_posts_before(channel_id, anchor, page, POSTS_PER_PAGE)
            if not batch:
                break
            reached_start = False
            for post in batch:
                if post.create_at < start_time:
                    reached_start = True
                    break
                if post.create_at <= end_time:
                    result.insert(0, post)
                    if len(result) >= MAX_POSTS:
                        break
            if reached_start:
                break
            page += 1
        return result

    async def interval(
        self,
        context: LLMContext,
        channel_id: str,
        start_time: int,
        end_time: int,
        preset_prompt: str,
    ) -> TextStream:
        prompt_name = PRESET_PROMPTS.get(preset_prompt)
        if prompt_name is None:
            raise InvalidPresetError(preset_prompt)

        if end_time == 0:
            posts = await self.host.get_posts_since(channel_id, start_time)
        else:
            posts = await self.get_posts_between(channel_id, start_time, end_time)

        thread = await get_metadata_for_posts(self.host, posts)
        thread.posts = [p for p in thread.posts if p.delete_at == 0]

        context.parameters = {"Thread": format_thread(thread)}
        system = self.prompts.format(prompt_name, context)
        user = self.prompts.format(PROMPT_THREAD_USER, context)
        request = CompletionRequest(
            posts=[Post(role=PostRole.SYSTEM, message=system), Post(role=PostRole.USER, message=user)],
            context=context,
        )
        return await self.llm.chat_completion(request)


async def handle_interval_request(
    conversations: "Conversations",
    user_id: str,
    bot: "Bot",
    channel: Channel,
    start_time: int,
    end_time: int,
    preset_prompt: str,
) -> dict:
    """Run an interval analysis and stream it into a DM with the user."""
    if preset_prompt not in PRESET_PROMPTS:
        raise InvalidPresetError(preset_prompt)

    host = conversations.host
    user = await host.get_user(user_id)
    context = await conversations.build_context(bot, user, channel)

    channels = Channels(bot.llm, conversations.prompts, host, conversations.store)
    stream = await channels.interval(context, channel.id, start_time, end_time, preset_prompt)

    post = HostPost()
    post.add_prop(PROP_NO_REGEN, "true")
    created = await conversations.streaming.stream_to_new_dm(bot.user_id, stream, user.id, post, "")

    conversations.save_title_async(created.id, translate(PRESET_TITLES[preset_prompt], user.locale))
    return {"post_id": created.id, "channel_id": created.channel_id}
