"""
Regenerating a bot answer in place.

The post is cleared and refilled from a fresh completion. What gets re-run
depends on how the post was produced: a thread analysis, a recording or
transcript summary, or an ordinary reply to the post in `responding_to`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from parley.analysis.meetings import Meetings, get_captions_file_id_from_props
from parley.analysis.threads import Threads, prompt_for_analysis
from parley.conversations.conversations import PERMISSION_READ_CHANNEL, Conversations
from parley.errors import ParleyError, UsageRestrictionError
from parley.host.models import (
    PROP_NO_REGEN,
    PROP_PENDING_TOOL_CALL,
    PROP_PROMPT_TYPE,
    PROP_REFERENCED_RECORDING,
    PROP_REFERENCED_THREAD,
    PROP_REFERENCED_TRANSCRIPT,
    PROP_REQUESTER,
    PROP_RESPONDING_TO,
    Channel,
    HostPost,
)
from parley.i18n import DEFAULT_LOCALE, format_analysis_post_message
from parley.llm.stream import TextStream
from parley.streaming import get_locale_for_dm

if TYPE_CHECKING:
    from parley.bots.models import Bot

logger = logging.getLogger(__name__)


async def handle_regenerate(
    conversations: Conversations,
    meetings: Meetings,
    user_id: str,
    post: HostPost,
    channel: Channel,
) -> None:
    host = conversations.host

    bot = conversations.bots.get_bot_by_id(post.user_id)
    if bot is None:
        raise ParleyError("unable to get bot")

    if post.prop_str(PROP_REQUESTER) != user_id:
        raise UsageRestrictionError("only the original poster can regenerate")

    if post.get_prop(PROP_NO_REGEN) is not None:
        raise ParleyError("tagged no regen")

    user = await host.get_user(user_id)

    cancelled = conversations.streaming.get_streaming_context(post.id)
    try:
        post.del_prop(PROP_PENDING_TOOL_CALL)
        stream = await _regenerate_stream(conversations, meetings, bot, user, post, channel)

        settings = await host.get_server_settings()
        locale = get_locale_for_dm(bot.user_id, user, channel, settings.get("default_locale") or DEFAULT_LOCALE)
        await conversations.streaming.stream_to_post(cancelled, stream, post, locale)
    finally:
        conversations.streaming.finish_streaming(post.id)


async def _regenerate_stream(
    conversations: Conversations,
    meetings: Meetings,
    bot: "Bot",
    user,
    post: HostPost,
    channel: Channel,
) -> TextStream:
    host = conversations.host

    thread_id = post.prop_str(PROP_REFERENCED_THREAD)
    if thread_id:
        analysis_type = post.prop_str(PROP_PROMPT_TYPE)
        prompt_name = prompt_for_analysis(analysis_type)

        settings = await host.get_server_settings()
        post.message = format_analysis_post_message(
            user.locale, thread_id, analysis_type, settings.get("site_url", "")
        )

        thread_post = await host.get_post(thread_id)
        if not await host.has_permission_to_channel(user.id, thread_post.channel_id, PERMISSION_READ_CHANNEL):
            raise UsageRestrictionError("user doesn't have permission to read the channel of the original thread")

        context = await conversations.build_context(bot, user, channel)
        try:
            return await Threads(bot.llm, conversations.prompts, host).analyze(thread_id, context, prompt_name)
        except ParleyError:
            raise
        except Exception as e:
            raise ParleyError(f"could not analyze thread on regen: {e}") from e

    recording_file_id = post.prop_str(PROP_REFERENCED_RECORDING)
    if recording_file_id:
        post.message = ""
        if not post.file_ids:
            raise ParleyError("post has no transcription file")

        info = await host.get_file_info(recording_file_id)
        transcript = await meetings.read_transcript(post.file_ids[0])
        if transcript.is_empty():
            raise ParleyError("transcription is empty on regen")

        recording_channel = await host.get_channel(info.channel_id)
        context = await conversations.build_context(bot, user, recording_channel)
        return await meetings.summarize_transcription(bot, transcript, context)

    transcript_post_id = post.prop_str(PROP_REFERENCED_TRANSCRIPT)
    if transcript_post_id:
        post.message = ""
        transcript_post = await host.get_post(transcript_post_id)
        file_id = get_captions_file_id_from_props(transcript_post)
        transcript = await meetings.read_transcript(file_id, transcript_post.type)

        context = await conversations.build_context(bot, user, channel)
        return await meetings.summarize_transcription(bot, transcript, context)

    post.message = ""
    responding_to_id = post.prop_str(PROP_RESPONDING_TO)
    if not responding_to_id:
        raise ParleyError("post missing responding to prop")
    responding_to = await host.get_post(responding_to_id)

    context = await conversations.build_context(bot, user, channel)
    try:
        return await conversations.process_user_request_with_context(bot, user, channel, responding_to, context)
    except ParleyError:
        raise
    except Exception as e:
        raise ParleyError(f"could not continue conversation on regen: {e}") from e
