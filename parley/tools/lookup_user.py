"""LookupMattermostUser tool: profile and presence of a user by username."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import Field

from parley.errors import NotFoundError, ToolResolveError
from parley.host.base import HostPlatform
from parley.llm.context import LLMContext
from parley.llm.tools import Tool, ToolArgs, schema_from_model

PERMISSION_VIEW_MEMBERS = "view_members"

_VALID_USERNAME = re.compile(r"^[a-z][a-z0-9.\-_]{2,63}$")


class LookupUserArgs(ToolArgs):
    username: str = Field(description="The username of the user to lookup without a leading '@'. Example: 'firstname.lastname'")


class LookupUserTool:
    def __init__(self, host: HostPlatform):
        self.host = host

    def tool(self) -> Tool:
        return Tool(
            name="LookupMattermostUser",
            description=(
                "Lookup a user by their username. Available information includes: username, full name, "
                "email, nickname, position, locale, timezone, last activity, and status."
            ),
            schema=schema_from_model(LookupUserArgs),
            resolver=self.resolve,
        )

    async def resolve(self, context: LLMContext, get_args) -> str:
        args: LookupUserArgs = get_args(LookupUserArgs)
        username = args.username.lstrip("@").lower()
        if not _VALID_USERNAME.match(username):
            raise ToolResolveError("invalid username")

        if context.requesting_user is None:
            raise ToolResolveError("no requesting user")
        if not await self.host.has_permission_to(context.requesting_user.id, PERMISSION_VIEW_MEMBERS):
            raise ToolResolveError("user doesn't have permission to lookup users")

        try:
            user = await self.host.get_user_by_username(username)
        except NotFoundError:
            return "user not found"

        try:
            status = await self.host.get_user_status(user.id)
        except Exception as e:
            raise ToolResolveError(f"failed to get user status: {e}") from e

        settings = await self.host.get_server_settings()
        lines = [f"Username: {user.username}"]
        if settings.get("show_full_name") and (user.first_name or user.last_name):
            lines.append(f"Full Name: {user.first_name} {user.last_name}")
        if settings.get("show_email_address"):
            lines.append(f"Email: {user.email}")
        if user.nickname:
            lines.append(f"Nickname: {user.nickname}")
        if user.position:
            lines.append(f"Position: {user.position}")
        if user.locale:
            lines.append(f"Locale: {user.locale}")
        lines.append(f"Timezone: {user.preferred_timezone}")

        last_activity = datetime.fromtimestamp(status.last_activity_at / 1000, tz=timezone.utc)
        lines.append(f"Last Activity: {last_activity.strftime('%Y-%m-%d %H:%M:%S %Z')}")

        # Manually set statuses are free text written by the user
        if status.status and not status.manual:
            lines.append(f"Status: {status.status}")
        return "\n".join(lines)
