"""
Conversations: turning chat threads into completion requests.

A user message either starts a new conversation (system prompt + the
message) or continues a thread, in which case the thread is loaded, cut
off before the current post and mapped to alternating user/assistant
turns. Threads that began as a bot analysis DM are continued with the
analysis prompt of the referenced thread instead of the plain DM prompt,
after re-checking that the requester can still read that thread.

Every new request also kicks off a background title generation; titles
land in LLM_PostMeta and feed the conversation list.
"""

from __future__ import annotations

import asyncio
import logging

from parley.analysis.threads import Threads, prompt_for_analysis
from parley.bots.models import Bot
from parley.bots.permissions import check_usage_restrictions
from parley.errors import NotFoundError, ParleyError, PermissionLostError, UsageRestrictionError
from parley.host.base import HostPlatform, get_thread_data
from parley.host.models import (
    PROP_NO_REGEN,
    PROP_PENDING_TOOL_CALL,
    PROP_PROMPT_TYPE,
    PROP_REFERENCED_THREAD,
    Channel,
    HostPost,
    ThreadData,
    User,
    is_dm_with,
)
from parley.i18n import translate
from parley.llm.context import ContextFactory, LLMContext
from parley.llm.models import CompletionRequest, File, Post, PostRole, ToolCallStatus, tool_calls_from_json
from parley.llm.prompts import PROMPT_DIRECT_MESSAGE_QUESTION, PromptRegistry
from parley.llm.stream import TextStream
from parley.storage.sqlite_store import AIThread, SQLiteStore
from parley.streaming import StreamingCoordinator, modify_post_for_bot

logger = logging.getLogger(__name__)

TITLE_REQUEST = (
    "Write a short title for the following request. "
    "Include only the title and nothing else, no quotations. Request:\n"
)
TITLE_MAX_TOKENS = 25

PERMISSION_READ_CHANNEL = "read_channel"

# Image size cap when a bot does not set max_file_size
DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024


class Conversations:
    def __init__(
        self,
        host: HostPlatform,
        prompts: PromptRegistry,
        streaming: StreamingCoordinator,
        context_factory: ContextFactory,
        bots,
        store: SQLiteStore | None,
        check_usage=check_usage_restrictions,
    ):
        self.host = host
        self.prompts = prompts
        self.streaming = streaming
        self.context_factory = context_factory
        self.bots = bots
        self.store = store
        self.check_usage = check_usage
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def build_context(self, bot: Bot, user: User, channel: Channel | None) -> LLMContext:
        """User request context with the bot's default tools."""
        return await (
            self.context_factory.builder()
            .with_server_info()
            .with_requesting_user(user)
            .with_channel(channel)
            .with_bot(bot)
            .with_default_tools(bot, is_dm_with(bot.user_id, channel))
            .build()
        )

    async def process_user_request(self, bot: Bot, user: User, channel: Channel, post: HostPost) -> TextStream:
        context = await self.build_context(bot, user, channel)
        return await self.process_user_request_with_context(bot, user, channel, post, context)

    async def process_user_request_with_context(
        self,
        bot: Bot,
        user: User,
        channel: Channel,
        post: HostPost,
        context: LLMContext,
    ) -> TextStream:
        if not post.root_id:
            posts = [Post(role=PostRole.SYSTEM, message=self.prompts.format(PROMPT_DIRECT_MESSAGE_QUESTION, context))]
        else:
            thread = await get_thread_data(self.host, post.id)
            thread.cutoff_before_post_id(post.id)
            posts = await self.existing_conversation_to_llm_posts(bot, thread, context)

        posts.append(await self._to_llm_post(bot, post, PostRole.USER))

        stream = await bot.llm.chat_completion(CompletionRequest(posts=posts, context=context))

        self._spawn(self._title_in_background(bot, TITLE_REQUEST + post.message, post.id, context))
        return stream

    async def existing_conversation_to_llm_posts(
        self, bot: Bot, conversation: ThreadData, context: LLMContext
    ) -> list[Post]:
        root = conversation.posts[0] if conversation.posts else None
        original_thread_id = root.prop_str(PROP_REFERENCED_THREAD) if root else ""

        if original_thread_id and root.user_id == bot.user_id:
            await self._check_thread_access(bot, original_thread_id, root, context)

            analysis_type = root.prop_str(PROP_PROMPT_TYPE)
            if not analysis_type:
                raise ParleyError("missing analysis type")

            threads = Threads(bot.llm, self.prompts, self.host)
            posts = await threads.follow_up_analyze(original_thread_id, context, prompt_for_analysis(analysis_type))
            posts.extend(await self.thread_to_llm_posts(bot, conversation.posts))
            return posts

        posts = [Post(role=PostRole.SYSTEM, message=self.prompts.format(PROMPT_DIRECT_MESSAGE_QUESTION, context))]
        posts.extend(await self.thread_to_llm_posts(bot, conversation.posts))
        return posts

    async def _check_thread_access(self, bot: Bot, thread_id: str, root: HostPost, context: LLMContext) -> None:
        user = context.requesting_user
        if user is None:
            raise ParleyError("no requesting user")

        thread_post = await self.host.get_post(thread_id)
        thread_channel = await self.host.get_channel(thread_post.channel_id)

        allowed = await self.host.has_permission_to_channel(user.id, thread_channel.id, PERMISSION_READ_CHANNEL)
        if allowed:
            try:
                await self.check_usage(self.host, user.id, bot, thread_channel)
            except UsageRestrictionError:
                allowed = False
        if allowed:
            return

        apology = HostPost(
            channel_id=context.channel.id if context.channel else root.channel_id,
            root_id=root.id,
            message=translate("no_access_to_thread", user.locale),
        )
        await self.bot_create_non_response_post(bot.user_id, user.id, apology)
        raise PermissionLostError("user no longer has access to original thread")

    async def thread_to_llm_posts(self, bot: Bot, posts: list[HostPost]) -> list[Post]:
        result = []
        for post in posts:
            role = PostRole.ASSISTANT if post.user_id == bot.user_id else PostRole.USER
            result.append(await self._to_llm_post(bot, post, role))
        return result

    async def _to_llm_post(self, bot: Bot, post: HostPost, role: PostRole) -> Post:
        llm_post = Post(role=role, message=post.message)

        if role == PostRole.ASSISTANT:
            raw = post.prop_str(PROP_PENDING_TOOL_CALL)
            if raw:
                try:
                    calls = tool_calls_from_json(raw)
                except ValueError as e:
                    logger.warning("Ignoring malformed tool calls on post %s: %s", post.id, e)
                else:
                    # Unresolved calls have no result to replay yet
                    if calls and all(c.status != ToolCallStatus.PENDING for c in calls):
                        llm_post.tool_use = calls
            return llm_post

        max_size = bot.config.max_file_size if bot.config.max_file_size > 0 else DEFAULT_MAX_FILE_SIZE
        for file_id in post.file_ids:
            try:
                info = await self.host.get_file_info(file_id)
            except Exception as e:
                logger.error("Unable to get file info for %s: %s", file_id, e)
                continue

            if info.mime_type.startswith("image/"):
                if not bot.config.enable_vision or info.size > max_size:
                    continue
                try:
                    data = await self.host.read_file(file_id)
                except Exception as e:
                    logger.error("Unable to read file %s: %s", file_id, e)
                    continue
                llm_post.files.append(
                    File(mime_type=info.mime_type, size=info.size, reader=lambda d=data: d, name=info.name)
                )
            elif info.content:
                llm_post.message += f"\nFile Name: {info.name}\nFile Contents: {info.content}"
        return llm_post

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------

    async def generate_title(self, bot: Bot, request: str, post_id: str, context: LLMContext) -> None:
        title_request = CompletionRequest(posts=[Post(role=PostRole.USER, message=request)], context=context)
        try:
            title = await bot.llm.chat_completion_no_stream(title_request, max_generated_tokens=TITLE_MAX_TOKENS)
        except Exception as e:
            raise ParleyError(f"failed to get title: {e}") from e
        self.save_title(post_id, title.strip("\n \"'"))

    async def _title_in_background(self, bot: Bot, request: str, post_id: str, context: LLMContext) -> None:
        try:
            await self.generate_title(bot, request, post_id, context)
        except Exception as e:
            logger.error("Failed to generate title: %s", e)

    def save_title(self, thread_id: str, title: str) -> None:
        if self.store is None:
            return
        self.store.save_title(thread_id, title)

    def save_title_async(self, thread_id: str, title: str) -> None:
        async def _save():
            try:
                self.save_title(thread_id, title)
            except Exception as e:
                logger.error("failed to save title: %s", e)

        self._spawn(_save())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for outstanding title work."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    async def bot_create_non_response_post(self, bot_id: str, requester_id: str, post: HostPost) -> HostPost:
        """A bot post that is not a model answer, so it can't be regenerated."""
        modify_post_for_bot(bot_id, requester_id, post)
        post.add_prop(PROP_NO_REGEN, "true")
        return await self.host.create_post(post)

    async def get_ai_threads(self, user_id: str) -> list[AIThread]:
        dm_channel_ids = []
        for bot in self.bots.get_all_bots():
            try:
                channel = await self.host.get_direct_channel(user_id, bot.user_id)
            except NotFoundError:
                continue
            except Exception as e:
                logger.error("Unable to get DM channel for bot %s: %s", bot.user_id, e)
                continue

            if not await self.host.has_permission_to_channel(user_id, channel.id, PERMISSION_READ_CHANNEL):
                logger.debug("User %s can't read channel %s", user_id, channel.id)
                continue
            dm_channel_ids.append(channel.id)

        if self.store is None:
            return []
        return self.store.get_ai_threads(dm_channel_ids)
