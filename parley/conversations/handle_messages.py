"""
Router for newly created posts.

A post is answered when it mentions a bot (`@bot`, outside code) or is
written in a DM with a bot, and it passes the filters below. Filtered
posts raise NoResponseError, which callers log at debug level.
"""

from __future__ import annotations

import logging

from parley.bots.models import Bot
from parley.bots.permissions import check_usage_restrictions, check_usage_restrictions_for_user
from parley.conversations.conversations import Conversations
from parley.errors import NoResponseError, ParleyError
from parley.host.models import (
    PROP_ACTIVATE_AI,
    PROP_AI_HOP_COUNT,
    PROP_FROM_BOT,
    PROP_FROM_PLUGIN,
    PROP_FROM_WEBHOOK,
    PROP_WRANGLER,
    Channel,
    HostPost,
    User,
)

logger = logging.getLogger(__name__)

# Posts re-entering through activate_ai this many times are dropped
MAX_AI_HOPS = 3


def ai_hop_count(post: HostPost) -> int:
    try:
        return int(post.get_prop(PROP_AI_HOP_COUNT, 0) or 0)
    except (TypeError, ValueError):
        return 0


class MessageHandler:
    def __init__(self, conversations: Conversations):
        self.conversations = conversations
        self.host = conversations.host
        self.bots = conversations.bots
        self.streaming = conversations.streaming

    async def message_has_been_posted(self, post: HostPost) -> HostPost | None:
        """Host hook; never raises."""
        try:
            return await self.handle_messages(post)
        except NoResponseError as e:
            logger.debug("%s", e)
        except Exception as e:
            logger.error("Failed to handle post %s: %s", post.id, e)
        return None

    async def handle_messages(self, post: HostPost) -> HostPost | None:
        if self.bots.is_any_bot(post.user_id):
            raise NoResponseError("not responding to ourselves")

        if post.remote_id:
            raise NoResponseError("not responding to remote posts")

        if post.get_prop(PROP_WRANGLER) is not None:
            raise NoResponseError("not responding to wrangler posts")

        activated = post.get_prop(PROP_ACTIVATE_AI) is not None

        if post.get_prop(PROP_FROM_PLUGIN) is not None and not activated:
            raise NoResponseError("not responding to plugin posts")

        if post.get_prop(PROP_FROM_WEBHOOK) is not None:
            raise NoResponseError("not responding to webhook posts")

        if activated and ai_hop_count(post) >= MAX_AI_HOPS:
            raise NoResponseError("not responding to posts past the AI hop limit")

        try:
            channel = await self.host.get_channel(post.channel_id)
        except Exception as e:
            raise ParleyError(f"unable to get channel: {e}") from e

        posting_user = await self.host.get_user(post.user_id)

        if (posting_user.is_bot or post.get_prop(PROP_FROM_BOT) is not None) and not activated:
            raise NoResponseError("not responding to other bots")

        bot = self.bots.get_bot_mentioned(post.message)
        if bot is not None:
            return await self.handle_mentions(bot, post, posting_user, channel)

        bot = self.bots.get_bot_for_dm_channel(channel)
        if bot is not None:
            return await self.handle_dms(bot, channel, posting_user, post)

        return None

    async def handle_mentions(self, bot: Bot, post: HostPost, user: User, channel: Channel) -> HostPost:
        await check_usage_restrictions(self.host, user.id, bot, channel)
        return await self._respond(bot, post, user, channel)

    async def handle_dms(self, bot: Bot, channel: Channel, user: User, post: HostPost) -> HostPost:
        await check_usage_restrictions_for_user(self.host, bot, user.id)
        return await self._respond(bot, post, user, channel)

    async def _respond(self, bot: Bot, post: HostPost, user: User, channel: Channel) -> HostPost:
        try:
            stream = await self.conversations.process_user_request(bot, user, channel, post)
        except ParleyError:
            raise
        except Exception as e:
            raise ParleyError(f"unable to process bot mention: {e}") from e

        response = HostPost(channel_id=channel.id, root_id=post.thread_root)
        if post.get_prop(PROP_ACTIVATE_AI) is not None:
            response.add_prop(PROP_AI_HOP_COUNT, ai_hop_count(post) + 1)
        return await self.streaming.stream_to_new_post(bot.user_id, user.id, stream, response, post.id)
