"""
Meeting transcript summaries.

Transcripts that fit the bot's context are summarised in one call. Longer
ones are map-reduced: split on sentence boundaries into pieces of about
the remaining budget, each piece summarised without streaming, and the
joined summaries summarised again with IsChunked set.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from parley.analysis.subtitles import Subtitles
from parley.chunking import split_plaintext_on_sentences
from parley.errors import ParleyError
from parley.host.base import HostPlatform
from parley.host.models import PROP_NO_REGEN, PROP_REFERENCED_TRANSCRIPT, Channel, HostPost, User
from parley.i18n import translate
from parley.llm.context import LLMContext
from parley.llm.models import CompletionRequest, Post, PostRole
from parley.llm.prompts import (
    PROMPT_MEETING_SUMMARY,
    PROMPT_MEETING_SUMMARY_USER,
    PROMPT_SUMMARIZE_CHUNK,
    PromptRegistry,
)
from parley.llm.stream import TextStream
from parley.streaming import modify_post_for_bot

if TYPE_CHECKING:
    from parley.bots.models import Bot

logger = logging.getLogger(__name__)

CONTEXT_TOKEN_MARGIN = 1000
CONTEXT_FRACTION = 0.75
POST_TYPE_ZOOM_CHAT = "custom_zoom_chat"


def get_captions_file_id_from_props(post: HostPost | None) -> str:
    """File ID of the first caption track attached to a calls post."""
    if post is None:
        raise ParleyError("post is nil")
    captions = post.get_prop("captions")
    if not isinstance(captions, list) or not captions:
        raise ParleyError("no captions on post")
    first = captions[0]
    if not isinstance(first, dict) or not isinstance(first.get("file_id"), str):
        raise ParleyError("unable to parse captions on post")
    return first["file_id"]


def transcript_token_budget(llm) -> int:
    budget = int(llm.input_token_limit() * CONTEXT_FRACTION) - CONTEXT_TOKEN_MARGIN
    if budget < 0:
        budget = CONTEXT_TOKEN_MARGIN // 2
    return budget


class Meetings:
    def __init__(self, host: HostPlatform, prompts: PromptRegistry, streaming, context_factory):
        self.host = host
        self.prompts = prompts
        self.streaming = streaming
        self.context_factory = context_factory

    async def summarize_transcription(self, bot: "Bot", transcription: Subtitles, context: LLMContext) -> TextStream:
        llm = bot.llm
        text = transcription.format_for_llm()
        tokens = llm.count_tokens(text)
        budget = transcript_token_budget(llm)

        chunked = False
        if tokens > budget:
            chunks = split_plaintext_on_sentences(text, budget * 4)
            logger.debug("Transcription too long (%d tokens > %d), summarizing %d chunks", tokens, budget, len(chunks))
            summaries = []
            for chunk in chunks:
                system = self.prompts.format(PROMPT_SUMMARIZE_CHUNK, context)
                request = CompletionRequest(
                    posts=[Post(role=PostRole.SYSTEM, message=system), Post(role=PostRole.USER, message=chunk)],
                    context=context,
                )
                try:
                    summaries.append(await llm.chat_completion_no_stream(request))
                except Exception as e:
                    raise ParleyError(f"unable to get summarized chunk: {e}") from e
            text = "\n\n".join(summaries)
            chunked = True
            logger.debug("Completed chunk summarization: %d chunks, %d tokens", len(summaries), llm.count_tokens(text))

        context.parameters = {"IsChunked": "true" if chunked else "false", "Transcript": text}
        system = self.prompts.format(PROMPT_MEETING_SUMMARY, context)
        user = self.prompts.format(PROMPT_MEETING_SUMMARY_USER, context)
        request = CompletionRequest(
            posts=[Post(role=PostRole.SYSTEM, message=system), Post(role=PostRole.USER, message=user)],
            context=context,
        )
        return await llm.chat_completion(request)

    async def read_transcript(self, file_id: str, post_type: str = "") -> Subtitles:
        data = await self.host.read_file(file_id)
        if post_type == POST_TYPE_ZOOM_CHAT:
            return Subtitles.from_zoom_chat(data)
        return Subtitles.from_vtt(data)

    async def summarize_transcript_post(
        self, bot: "Bot", user: User, transcription_post: HostPost, channel: Channel
    ) -> HostPost:
        """
        DM the requester an acknowledgement, then stream the summary of the
        calls transcript attached to transcription_post as a reply to it.
        """
        if len(transcription_post.file_ids) != 1:
            raise ParleyError("unexpected number of files in calls post")

        settings = await self.host.get_server_settings()
        site_url = settings.get("site_url", "")
        sure_post = HostPost(
            message=(
                f"Sure, I will summarize this transcription: "
                f"{site_url}/_redirect/pl/{transcription_post.id}\n"
            ),
        )
        sure_post.add_prop(PROP_NO_REGEN, "true")
        sure_post.add_prop(PROP_REFERENCED_TRANSCRIPT, transcription_post.id)
        modify_post_for_bot(bot.user_id, user.id, sure_post)
        sure_post = await self.host.dm(bot.user_id, user.id, sure_post)

        try:
            file_id = get_captions_file_id_from_props(transcription_post)
            transcript = await self.read_transcript(file_id, transcription_post.type)
            if transcript.is_empty():
                raise ParleyError("transcription is empty")

            context = await self.context_factory.build_for_user_request(bot, user, channel, with_tools=True)
            stream = await self.summarize_transcription(bot, transcript, context)
        except Exception as e:
            logger.error("Error summarizing transcription post %s: %s", transcription_post.id, e)
            sure_post.message = translate("llm_error", user.locale)
            try:
                await self.host.update_post(sure_post)
            except Exception as update_err:
                logger.error("Failed to update post after transcription error: %s", update_err)
            raise

        summary_post = HostPost(channel_id=sure_post.channel_id, root_id=sure_post.id)
        summary_post.add_prop(PROP_REFERENCED_TRANSCRIPT, transcription_post.id)
        await self.streaming.stream_to_new_post(bot.user_id, user.id, stream, summary_post, transcription_post.id)
        return sure_post
