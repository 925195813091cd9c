"""
Bot usage restrictions.

Channel and user access rules are checked against the host on every
request; nothing here is cached.
"""

from __future__ import annotations

import logging

from parley.bots.models import Bot, ChannelAccessLevel, UserAccessLevel
from parley.errors import NotFoundError, ParleyError, UsageRestrictionError
from parley.host.base import HostPlatform
from parley.host.models import Channel

logger = logging.getLogger(__name__)


async def check_usage_restrictions(host: HostPlatform, user_id: str, bot: Bot, channel: Channel) -> None:
    """Raise UsageRestrictionError unless user_id may use bot in channel."""
    await check_usage_restrictions_for_user(host, bot, user_id)
    check_usage_restrictions_for_channel(bot, channel)


def check_usage_restrictions_for_channel(bot: Bot, channel: Channel) -> None:
    cfg = bot.config
    level = cfg.channel_access_level
    if level == ChannelAccessLevel.ALL:
        return
    if level == ChannelAccessLevel.ALLOW:
        if channel.id not in cfg.channel_ids:
            raise UsageRestrictionError("channel not allowed")
        return
    if level == ChannelAccessLevel.BLOCK:
        if channel.id in cfg.channel_ids:
            raise UsageRestrictionError("channel blocked")
        return
    if level == ChannelAccessLevel.NONE:
        raise UsageRestrictionError("channel usage block for bot")
    raise ParleyError("unknown channel assistance level")


async def _is_member_of_team(host: HostPlatform, team_id: str, user_id: str) -> bool:
    try:
        member = await host.get_team_member(team_id, user_id)
    except NotFoundError:
        return False
    return member is not None and member.delete_at == 0


async def _in_any_team(host: HostPlatform, team_ids: list[str], user_id: str) -> bool:
    for team_id in team_ids:
        if await _is_member_of_team(host, team_id, user_id):
            return True
    return False


async def check_usage_restrictions_for_user(host: HostPlatform, bot: Bot, user_id: str) -> None:
    cfg = bot.config
    level = cfg.user_access_level
    if level == UserAccessLevel.ALL:
        return
    if level == UserAccessLevel.ALLOW:
        if user_id in cfg.user_ids:
            return
        if await _in_any_team(host, cfg.team_ids, user_id):
            return
        raise UsageRestrictionError("user not allowed")
    if level == UserAccessLevel.BLOCK:
        if user_id in cfg.user_ids:
            raise UsageRestrictionError("user blocked")
        if await _in_any_team(host, cfg.team_ids, user_id):
            raise UsageRestrictionError("user's team blocked")
        return
    if level == UserAccessLevel.NONE:
        raise UsageRestrictionError("user usage block for bot")
    raise ParleyError("unknown user assistance level")
