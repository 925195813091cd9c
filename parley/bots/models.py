"""
Bot configuration and the live Bot object.

A BotConfig comes straight from the `bots:` list in config.yaml; a Bot
binds that config to its host identity and the (wrapped) LanguageModel
serving it.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import IntEnum

from parley.backends.base import (
    SERVICE_ANTHROPIC,
    SERVICE_AZURE,
    SERVICE_OPENAI,
    SERVICE_OPENAI_COMPATIBLE,
    LanguageModel,
    ServiceConfig,
)
from parley.host.models import BotUser

logger = logging.getLogger(__name__)


class ChannelAccessLevel(IntEnum):
    ALL = 0
    ALLOW = 1
    BLOCK = 2
    NONE = 3


class UserAccessLevel(IntEnum):
    ALL = 0
    ALLOW = 1
    BLOCK = 2
    NONE = 3


def _access_level(enum_cls, value):
    """Accept either the integer or the lower-case name ("allow")."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls[value.upper()]
        except KeyError:
            return value
    try:
        return enum_cls(value)
    except ValueError:
        return value


@dataclass
class BotConfig:
    name: str = ""
    display_name: str = ""
    custom_instructions: str = ""
    service: ServiceConfig = field(default_factory=ServiceConfig)
    enable_vision: bool = False
    disable_tools: bool = False
    channel_access_level: ChannelAccessLevel = ChannelAccessLevel.ALL
    channel_ids: list[str] = field(default_factory=list)
    user_access_level: UserAccessLevel = UserAccessLevel.ALL
    user_ids: list[str] = field(default_factory=list)
    team_ids: list[str] = field(default_factory=list)
    max_file_size: int = 0

    @classmethod
    def from_dict(cls, data: dict | None) -> "BotConfig":
        data = dict(data or {})
        names = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in names}
        values["service"] = ServiceConfig.from_dict(data.get("service"))
        if "channel_access_level" in values:
            values["channel_access_level"] = _access_level(ChannelAccessLevel, values["channel_access_level"])
        if "user_access_level" in values:
            values["user_access_level"] = _access_level(UserAccessLevel, values["user_access_level"])
        return cls(**values)

    def is_valid(self) -> bool:
        if not self.name or not self.display_name or not self.service.type:
            return False
        if not isinstance(self.channel_access_level, ChannelAccessLevel):
            return False
        if not isinstance(self.user_access_level, UserAccessLevel):
            return False

        service = self.service
        if service.type == SERVICE_OPENAI:
            return bool(service.api_key)
        if service.type == SERVICE_OPENAI_COMPATIBLE:
            return bool(service.api_url)
        if service.type == SERVICE_AZURE:
            return bool(service.api_key and service.api_url)
        if service.type == SERVICE_ANTHROPIC:
            return bool(service.api_key)
        return False


class Bot:
    """A configured bot with its host identity and model."""

    def __init__(self, config: BotConfig, user: BotUser, llm: LanguageModel | None = None):
        self.config = config
        self.user = user
        self.llm = llm

    @property
    def user_id(self) -> str:
        return self.user.user_id

    @property
    def username(self) -> str:
        return self.user.username

    @property
    def service(self) -> ServiceConfig:
        return self.config.service

    def __repr__(self) -> str:
        return f"Bot(name={self.config.name!r}, user_id={self.user_id!r}, service={self.service.type!r})"
