"""
LLMContext: everything a prompt template or tool resolver may need to
know about the request: who is asking, where, which bot answers, which
tools are on offer and any free-form template parameters.

Contexts are assembled by an LLMContextBuilder obtained from a
ContextFactory:

    ctx = await (
        factory.builder()
        .with_server_info()
        .with_requesting_user(user)
        .with_channel(channel)
        .with_bot(bot)
        .with_default_tools(bot)
        .build()
    )

Modifiers run in the order they were added. A context is treated as
read-only once a model call starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from parley.host.models import Channel, Team, User
from parley.llm.tools import ToolStore

if TYPE_CHECKING:
    from parley.bots.models import Bot
    from parley.host.base import HostPlatform

logger = logging.getLogger(__name__)

RFC1123 = "%a, %d %b %Y %H:%M:%S %Z"


def format_time(tz_name: str = "") -> str:
    """Current time in RFC1123 form, in tz_name when it is a known zone."""
    now = datetime.now(timezone.utc)
    if tz_name:
        try:
            now = now.astimezone(ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone '%s', using UTC", tz_name)
    return now.strftime(RFC1123)


@dataclass
class LLMContext:
    time: str = field(default_factory=format_time)
    server_name: str = ""
    company_name: str = ""

    team: Team | None = None
    channel: Channel | None = None

    requesting_user: User | None = None

    bot_name: str = ""
    bot_username: str = ""
    bot_model: str = ""
    custom_instructions: str = ""

    tools: ToolStore | None = None
    parameters: dict = field(default_factory=dict)

    def template_vars(self) -> dict:
        """Flat mapping handed to the prompt templates."""
        user = self.requesting_user
        return {
            "time": self.time,
            "server_name": self.server_name,
            "company_name": self.company_name,
            "team_name": self.team.display_name or self.team.name if self.team else "",
            "channel_name": self.channel.display_name or self.channel.name if self.channel else "",
            "username": user.username if user else "",
            "user_first_name": user.first_name if user else "",
            "user_locale": user.locale if user else "",
            "bot_name": self.bot_name,
            "bot_username": self.bot_username,
            "bot_model": self.bot_model,
            "custom_instructions": self.custom_instructions,
            "custom_instructions_block": (
                f"Additional instructions from the administrator:\n{self.custom_instructions}"
                if self.custom_instructions else ""
            ),
            **{str(k): v for k, v in (self.parameters or {}).items()},
        }

    def __str__(self) -> str:
        lines = [
            f"Time: {self.time}",
            f"ServerName: {self.server_name}",
            f"CompanyName: {self.company_name}",
        ]
        if self.requesting_user is not None:
            lines.append(f"RequestingUser: {self.requesting_user.username}")
        if self.channel is not None:
            lines.append(f"Channel: {self.channel.name}")
        if self.team is not None:
            lines.append(f"Team: {self.team.name}")
        out = "\n".join(lines)
        out += "\n--- Parameters ---\n" + "".join(f" {k}" for k in self.parameters or {})
        if self.tools is not None:
            out += "\n--- Tools ---\n" + "".join(f"{t.name} " for t in self.tools.get_tools())
        return out


Modifier = Callable[[LLMContext], Awaitable[None]]


class ContextFactory:
    """
    Holds the collaborators context modifiers need and hands out builders.

    tool_provider     : object with get_tools(is_dm, bot) -> list[Tool]
    mcp_tool_provider : object with async get_tools_for_user(user_id)
    enable_trace      : callable returning whether tool calls are traced
    """

    def __init__(
        self,
        host: "HostPlatform",
        tool_provider=None,
        mcp_tool_provider=None,
        enable_trace: Callable[[], bool] | None = None,
    ):
        self.host = host
        self.tool_provider = tool_provider
        self.mcp_tool_provider = mcp_tool_provider
        self.enable_trace = enable_trace or (lambda: False)

    def builder(self) -> "LLMContextBuilder":
        return LLMContextBuilder(self)

    async def build_for_user_request(
        self,
        bot: "Bot",
        user: User | None,
        channel: Channel | None,
        parameters: dict | None = None,
        with_tools: bool = False,
    ) -> LLMContext:
        """The usual modifier set for a user talking to a bot."""
        builder = (
            self.builder()
            .with_server_info()
            .with_requesting_user(user)
            .with_channel(channel)
            .with_bot(bot)
        )
        if parameters:
            builder.with_parameters(parameters)
        if with_tools:
            builder.with_default_tools(bot)
        return await builder.build()

    async def tool_store_for_user(self, bot: "Bot", is_dm: bool, user_id: str) -> ToolStore:
        """Tools the bot may offer user_id; empty when tools are disabled."""
        if bot is None:
            logger.error("Unexpected missing bot when getting tool store for user %s", user_id)
            return ToolStore()
        if not user_id:
            logger.error("Unexpected empty user ID when getting tool store")
            return ToolStore()
        if bot.config.disable_tools:
            return ToolStore()

        store = ToolStore(trace=self.enable_trace())
        if self.tool_provider is not None:
            store.add_tools(self.tool_provider.get_tools(is_dm, bot))

        if self.mcp_tool_provider is not None and is_dm:
            try:
                mcp_tools = await self.mcp_tool_provider.get_tools_for_user(user_id)
            except Exception as e:
                logger.error("Failed to get MCP tools for user %s: %s", user_id, e)
            else:
                store.add_tools(mcp_tools)
        return store


class LLMContextBuilder:
    """Ordered list of context modifiers plus build()."""

    def __init__(self, factory: ContextFactory):
        self._factory = factory
        self._modifiers: list[Modifier] = []

    def _add(self, modifier: Modifier) -> "LLMContextBuilder":
        self._modifiers.append(modifier)
        return self

    def with_server_info(self) -> "LLMContextBuilder":
        host = self._factory.host

        async def modifier(ctx: LLMContext) -> None:
            settings = await host.get_server_settings()
            ctx.server_name = settings.get("site_name", "") or ""
            ctx.company_name = await host.get_license_company() or ""

        return self._add(modifier)

    def with_requesting_user(self, user: User | None) -> "LLMContextBuilder":
        async def modifier(ctx: LLMContext) -> None:
            ctx.requesting_user = user
            if user is not None and user.preferred_timezone:
                ctx.time = format_time(user.preferred_timezone)

        return self._add(modifier)

    def with_channel(self, channel: Channel | None) -> "LLMContextBuilder":
        host = self._factory.host

        async def modifier(ctx: LLMContext) -> None:
            ctx.channel = channel
            if channel is None or channel.is_dm or channel.is_group:
                return
            try:
                ctx.team = await host.get_team(channel.team_id)
            except Exception as e:
                logger.error("Unable to get team %s for context: %s", channel.team_id, e)

        return self._add(modifier)

    def with_bot(self, bot: "Bot") -> "LLMContextBuilder":
        async def modifier(ctx: LLMContext) -> None:
            ctx.bot_name = bot.config.display_name
            ctx.bot_username = bot.config.name
            ctx.bot_model = bot.service.default_model
            ctx.custom_instructions = bot.config.custom_instructions

        return self._add(modifier)

    def with_parameters(self, params: dict) -> "LLMContextBuilder":
        async def modifier(ctx: LLMContext) -> None:
            ctx.parameters = dict(params)

        return self._add(modifier)

    def with_default_tools(self, bot: "Bot", is_dm: bool | None = None) -> "LLMContextBuilder":
        factory = self._factory

        async def modifier(ctx: LLMContext) -> None:
            if ctx.requesting_user is None:
                logger.error("Cannot add tools to context: no requesting user")
                return
            dm = is_dm
            if dm is None:
                dm = ctx.channel is not None and ctx.channel.is_dm and bot.user_id in ctx.channel.name
            ctx.tools = await factory.tool_store_for_user(bot, dm, ctx.requesting_user.id)

        return self._add(modifier)

    async def build(self) -> LLMContext:
        ctx = LLMContext()
        for modifier in self._modifiers:
            await modifier(ctx)
        return ctx
