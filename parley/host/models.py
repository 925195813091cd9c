"""
Chat-server objects as seen by parley.

These mirror the subset of the host's post/channel/user records the core
reads and writes. They are plain dataclasses; the host platform adapter
is responsible for filling them in.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

CHANNEL_OPEN = "O"
CHANNEL_PRIVATE = "P"
CHANNEL_DIRECT = "D"
CHANNEL_GROUP = "G"

# Props written on posts to carry state to clients.
PROP_REQUESTER = "llm_requester_user_id"
PROP_NO_REGEN = "no_regen"
PROP_PENDING_TOOL_CALL = "pending_tool_call"
PROP_RESPONDING_TO = "responding_to"
PROP_REFERENCED_THREAD = "referenced_thread"
PROP_PROMPT_TYPE = "prompt_type"
PROP_REFERENCED_RECORDING = "referenced_recording_file_id"
PROP_REFERENCED_TRANSCRIPT = "referenced_transcript_post_id"
PROP_UNSAFE_LINKS = "unsafe_links"
PROP_SEARCH_QUERY = "search_query"
PROP_SEARCH_RESULTS = "search_results"
PROP_ACTIVATE_AI = "activate_ai"
PROP_AI_HOP_COUNT = "ai_hop_count"
PROP_FROM_WEBHOOK = "from_webhook"
PROP_FROM_PLUGIN = "from_plugin"
PROP_FROM_BOT = "from_bot"
PROP_WRANGLER = "wrangler"

POST_TYPE_DEFAULT = ""
POST_TYPE_LLMBOT = "custom_llmbot"


@dataclass
class HostPost:
    id: str = ""
    user_id: str = ""
    channel_id: str = ""
    root_id: str = ""
    message: str = ""
    type: str = POST_TYPE_DEFAULT
    create_at: int = 0
    update_at: int = 0
    delete_at: int = 0
    edit_at: int = 0
    remote_id: str = ""
    file_ids: list[str] = field(default_factory=list)
    props: dict = field(default_factory=dict)

    def get_prop(self, key: str, default=None):
        return self.props.get(key, default)

    def add_prop(self, key: str, value) -> None:
        self.props[key] = value

    def del_prop(self, key: str) -> None:
        self.props.pop(key, None)

    def prop_str(self, key: str) -> str:
        value = self.props.get(key)
        return value if isinstance(value, str) else ""

    @property
    def attachments(self) -> list[dict]:
        value = self.props.get("attachments")
        return value if isinstance(value, list) else []

    @property
    def thread_root(self) -> str:
        """Root ID of the thread this post belongs to."""
        return self.root_id or self.id

    def clone(self) -> "HostPost":
        return copy.deepcopy(self)


@dataclass
class Channel:
    id: str
    type: str = CHANNEL_OPEN
    team_id: str = ""
    name: str = ""
    display_name: str = ""
    delete_at: int = 0

    @property
    def is_dm(self) -> bool:
        return self.type == CHANNEL_DIRECT

    @property
    def is_group(self) -> bool:
        return self.type == CHANNEL_GROUP


@dataclass
class Team:
    id: str
    name: str = ""
    display_name: str = ""


@dataclass
class User:
    id: str
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    nickname: str = ""
    email: str = ""
    position: str = ""
    locale: str = ""
    timezone: dict = field(default_factory=dict)
    is_bot: bool = False
    delete_at: int = 0
    roles: str = ""

    @property
    def preferred_timezone(self) -> str:
        """IANA zone the user prefers, or '' if unknown."""
        tz = self.timezone or {}
        if str(tz.get("useAutomaticTimezone", "")).lower() == "true":
            return tz.get("automaticTimezone", "")
        return tz.get("manualTimezone", "")

    @property
    def is_system_admin(self) -> bool:
        return "system_admin" in self.roles.split()


@dataclass
class UserStatus:
    user_id: str
    status: str = ""
    manual: bool = False
    last_activity_at: int = 0


@dataclass
class FileInfo:
    id: str
    name: str = ""
    extension: str = ""
    channel_id: str = ""
    mime_type: str = ""
    size: int = 0
    content: str = ""  # Extracted text, when the host indexed it


@dataclass
class TeamMember:
    team_id: str
    user_id: str
    delete_at: int = 0


@dataclass
class BotUser:
    """A bot identity registered on the host."""
    user_id: str
    username: str
    display_name: str = ""
    description: str = ""
    owner_id: str = ""
    delete_at: int = 0


@dataclass
class ThreadData:
    posts: list[HostPost] = field(default_factory=list)
    users_by_id: dict[str, User] = field(default_factory=dict)

    def cutoff_before_post_id(self, post_id: str) -> None:
        """Drop the post and everything after it."""
        for i in range(len(self.posts) - 1, -1, -1):
            if self.posts[i].id == post_id:
                self.posts = self.posts[:i]
                break

    def latest_post(self) -> HostPost | None:
        return self.posts[-1] if self.posts else None


def is_dm_with(user_id: str, channel: Channel | None) -> bool:
    """True if channel is a direct channel that user_id is part of."""
    return (
        channel is not None
        and channel.type == CHANNEL_DIRECT
        and bool(user_id)
        and user_id in channel.name
    )


def dm_channel_name(user_a: str, user_b: str) -> str:
    """Host naming rule for direct channels: sorted IDs joined by '__'."""
    first, second = sorted((user_a, user_b))
    return f"{first}__{second}"
