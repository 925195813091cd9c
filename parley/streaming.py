"""
Streaming coordinator.

Pumps a TextStream into a chat post: every text delta is appended to the
post and broadcast to clients as a `postupdate` websocket event, and the
post is persisted when the stream ends, fails, asks for tool calls or is
stopped by the user.

At most one live stream exists per post ID. Each one is represented by an
asyncio.Event in `_contexts`; setting the event (stop_streaming) makes the
pump persist the partial message and broadcast a `cancel` control event.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from parley.errors import AlreadyStreamingError
from parley.host.base import HostPlatform
from parley.host.models import (
    PROP_PENDING_TOOL_CALL,
    PROP_REQUESTER,
    PROP_RESPONDING_TO,
    PROP_UNSAFE_LINKS,
    POST_TYPE_LLMBOT,
    Channel,
    HostPost,
    User,
)
from parley.i18n import DEFAULT_LOCALE, translate
from parley.llm.models import ToolCallStatus, tool_calls_to_json
from parley.llm.stream import EventType, TextStream

logger = logging.getLogger(__name__)

POST_UPDATE_EVENT = "postupdate"

CONTROL_START = "start"
CONTROL_END = "end"
CONTROL_CANCEL = "cancel"
CONTROL_TOOL_CALL = "tool_call"


def modify_post_for_bot(bot_id: str, requester_id: str, post: HostPost, responding_to: str = "") -> None:
    """Stamp a post as bot-authored on behalf of requester_id."""
    post.user_id = bot_id
    post.type = POST_TYPE_LLMBOT
    post.add_prop(PROP_REQUESTER, requester_id)
    # Keep link previews and inline images off model-written content
    post.add_prop(PROP_UNSAFE_LINKS, "true")
    if responding_to:
        post.add_prop(PROP_RESPONDING_TO, responding_to)


def get_locale_for_dm(bot_id: str, user: User | None, channel: Channel | None, default_locale: str) -> str:
    """The user's locale inside their DM with the bot, else the server default."""
    if user is None or channel is None or not channel.is_dm:
        return default_locale
    if channel.name in (f"{bot_id}__{user.id}", f"{user.id}__{bot_id}"):
        return user.locale or default_locale
    return default_locale


class StreamingCoordinator:
    def __init__(self, host: HostPlatform):
        self.host = host
        self._contexts: dict[str, asyncio.Event] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Stream registry
    # ------------------------------------------------------------------

    def get_streaming_context(self, post_id: str) -> asyncio.Event:
        """Register a stream for post_id; the returned event cancels it."""
        with self._lock:
            if post_id in self._contexts:
                raise AlreadyStreamingError(post_id)
            cancelled = asyncio.Event()
            self._contexts[post_id] = cancelled
            return cancelled

    def stop_streaming(self, post_id: str) -> None:
        with self._lock:
            cancelled = self._contexts.pop(post_id, None)
        if cancelled is not None:
            cancelled.set()

    def finish_streaming(self, post_id: str) -> None:
        with self._lock:
            self._contexts.pop(post_id, None)

    def is_streaming(self, post_id: str) -> bool:
        with self._lock:
            return post_id in self._contexts

    async def drain(self) -> None:
        """Wait for every background pump started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def stream_to_new_post(
        self,
        bot_id: str,
        requester_id: str,
        stream: TextStream,
        post: HostPost,
        responding_to: str = "",
    ) -> HostPost:
        modify_post_for_bot(bot_id, requester_id, post, responding_to)
        created = await self.host.create_post(post)
        self._start_pump(bot_id, requester_id, stream, created)
        return created

    async def stream_to_new_dm(
        self,
        bot_id: str,
        stream: TextStream,
        user_id: str,
        post: HostPost,
        responding_to: str = "",
    ) -> HostPost:
        modify_post_for_bot(bot_id, user_id, post, responding_to)
        created = await self.host.dm(bot_id, user_id, post)
        self._start_pump(bot_id, user_id, stream, created)
        return created

    def _start_pump(self, bot_id: str, user_id: str, stream: TextStream, post: HostPost) -> None:
        cancelled = self.get_streaming_context(post.id)
        task = asyncio.create_task(self._pump(bot_id, user_id, stream, post, cancelled))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump(
        self,
        bot_id: str,
        user_id: str,
        stream: TextStream,
        post: HostPost,
        cancelled: asyncio.Event,
    ) -> None:
        try:
            locale = await self._resolve_locale(bot_id, user_id, post.channel_id)
            await self.stream_to_post(cancelled, stream, post, locale)
        except Exception as e:
            logger.error("Streaming to post %s failed: %s", post.id, e)
        finally:
            self.finish_streaming(post.id)

    async def _resolve_locale(self, bot_id: str, user_id: str, channel_id: str) -> str:
        try:
            settings = await self.host.get_server_settings()
        except Exception as e:
            logger.warning("Could not read server settings, streaming in %s: %s", DEFAULT_LOCALE, e)
            settings = {}
        default_locale = settings.get("default_locale") or DEFAULT_LOCALE
        try:
            user = await self.host.get_user(user_id)
            channel = await self.host.get_channel(channel_id)
        except Exception as e:
            logger.debug("Falling back to server locale: %s", e)
            return default_locale
        return get_locale_for_dm(bot_id, user, channel, default_locale)

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------

    async def _send_update(self, post: HostPost, message: str) -> None:
        await self.host.publish_websocket_event(
            POST_UPDATE_EVENT, {"post_id": post.id, "next": message}, post.channel_id
        )

    async def _send_control(self, post: HostPost, control: str) -> None:
        await self.host.publish_websocket_event(
            POST_UPDATE_EVENT, {"post_id": post.id, "control": control}, post.channel_id
        )

    async def stream_to_post(
        self,
        cancelled: asyncio.Event | None,
        stream: TextStream,
        post: HostPost,
        locale: str = DEFAULT_LOCALE,
    ) -> None:
        """Consume stream into post until a terminal event or cancellation."""
        await self._send_control(post, CONTROL_START)
        try:
            while True:
                event = await stream.next_event(cancelled)
                if event is None:
                    await stream.close()
                    try:
                        await self.host.update_post(post)
                    except Exception as e:
                        logger.error("Error updating post %s on stop: %s", post.id, e)
                        return
                    await self._send_control(post, CONTROL_CANCEL)
                    return

                if event.type == EventType.TEXT:
                    post.message += event.text
                    await self._send_update(post, post.message)

                elif event.type == EventType.END:
                    if not post.message.strip():
                        logger.error("LLM closed stream with no result")
                        post.message = translate("llm_no_result", locale)
                        await self._send_update(post, post.message)
                    try:
                        await self.host.update_post(post)
                    except Exception as e:
                        logger.error("Streaming failed to update post %s: %s", post.id, e)
                    return

                elif event.type == EventType.ERROR:
                    logger.error("Streaming result to post %s failed partway: %s", post.id, event.error)
                    post.message = translate("llm_error", locale)
                    try:
                        await self.host.update_post(post)
                    except Exception as e:
                        logger.error("Error recovering from streaming error on %s: %s", post.id, e)
                        return
                    await self._send_update(post, post.message)
                    return

                elif event.type == EventType.TOOL_CALLS:
                    for call in event.tool_calls:
                        call.status = ToolCallStatus.PENDING
                    payload = tool_calls_to_json(event.tool_calls)
                    post.add_prop(PROP_PENDING_TOOL_CALL, payload)
                    try:
                        await self.host.update_post(post)
                    except Exception as e:
                        logger.error("Failed to update post %s with tool call: %s", post.id, e)
                    await self.host.publish_websocket_event(
                        POST_UPDATE_EVENT,
                        {"post_id": post.id, "control": CONTROL_TOOL_CALL, "tool_call": payload},
                        post.channel_id,
                    )
                    return
        finally:
            await self._send_control(post, CONTROL_END)
