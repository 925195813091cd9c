"""
Resolution of tool calls the user approved or rejected.

The pending calls live as JSON on the bot post (`pending_tool_call`).
Accepted calls are resolved through the request's ToolStore, everything
else is marked rejected; the post is updated so the user sees the
results, and if at least one call succeeded the conversation continues
with a new streamed reply.
"""

from __future__ import annotations

import json
import logging

from parley.conversations.conversations import Conversations
from parley.errors import ParleyError, UsageRestrictionError
from parley.host.base import get_thread_data
from parley.host.models import PROP_PENDING_TOOL_CALL, PROP_REQUESTER, Channel, HostPost
from parley.i18n import translate
from parley.llm.models import CompletionRequest, ToolCallStatus, tool_calls_from_json, tool_calls_to_json
from parley.llm.tools import json_arg_getter

logger = logging.getLogger(__name__)


async def handle_tool_call(
    conversations: Conversations,
    user_id: str,
    post: HostPost,
    channel: Channel,
    accepted_tool_ids: list[str],
) -> HostPost | None:
    """Resolve the post's pending calls; returns the follow-up post, if any."""
    host = conversations.host

    bot = conversations.bots.get_bot_by_id(post.user_id)
    if bot is None:
        raise ParleyError("unable to get bot")

    if post.prop_str(PROP_REQUESTER) != user_id:
        raise UsageRestrictionError("only the original requester can resolve tool calls")

    raw = post.get_prop(PROP_PENDING_TOOL_CALL)
    if raw is None:
        raise ParleyError("post missing pending tool calls")
    try:
        calls = tool_calls_from_json(raw if isinstance(raw, str) else json.dumps(raw))
    except ValueError as e:
        raise ParleyError("post pending tool calls not valid JSON") from e

    user = await host.get_user(user_id)
    context = await conversations.build_context(bot, user, channel)

    accepted = set(accepted_tool_ids)
    for call in calls:
        if call.id not in accepted:
            call.result = translate("tool_call_rejected")
            call.status = ToolCallStatus.REJECTED
            continue
        if context.tools is None:
            call.result = translate("tool_call_failed")
            call.status = ToolCallStatus.ERROR
            continue
        try:
            call.result = await context.tools.resolve_tool(call.name, json_arg_getter(call.arguments), context)
        except Exception as e:
            logger.warning("Tool call %s (%s) failed: %s", call.id, call.name, e)
            call.result = translate("tool_call_failed")
            call.status = ToolCallStatus.ERROR
            continue
        call.status = ToolCallStatus.SUCCESS

    post.add_prop(PROP_PENDING_TOOL_CALL, tool_calls_to_json(calls))
    try:
        await host.update_post(post)
    except Exception as e:
        raise ParleyError(f"failed to update post with tool call results: {e}") from e

    if not any(c.status == ToolCallStatus.SUCCESS for c in calls):
        return None

    root_id = post.thread_root
    conversation = await get_thread_data(host, root_id)
    conversation.cutoff_before_post_id(post.id)
    conversation.posts.append(post)

    posts = await conversations.existing_conversation_to_llm_posts(bot, conversation, context)
    stream = await bot.llm.chat_completion(CompletionRequest(posts=posts, context=context))

    response = HostPost(channel_id=channel.id, root_id=root_id)
    return await conversations.streaming.stream_to_new_post(bot.user_id, user.id, stream, response, post.id)
