"""
Chat server interface as seen from parley.

Everything the core needs from the chat server goes through this
interface: posts, files, users, channels, the KV store, websocket
broadcast, a cluster-wide mutex and a few read-only settings. The plugin
embedding parley supplies the concrete implementation.
"""

from __future__ import annotations

import abc
import logging

from parley.host.models import (
    BotUser,
    Channel,
    FileInfo,
    HostPost,
    Team,
    TeamMember,
    ThreadData,
    User,
    UserStatus,
)

logger = logging.getLogger(__name__)


class HostPlatform(abc.ABC):
    """Abstract host platform. All I/O is async."""

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def create_post(self, post: HostPost) -> HostPost:
        """Create a post; the returned copy carries the assigned ID and timestamps."""
        ...

    @abc.abstractmethod
    async def update_post(self, post: HostPost) -> HostPost:
        ...

    @abc.abstractmethod
    async def get_post(self, post_id: str) -> HostPost:
        ...

    @abc.abstractmethod
    async def dm(self, sender_id: str, receiver_id: str, post: HostPost) -> HostPost:
        """Create `post` in the direct channel between sender and receiver."""
        ...

    @abc.abstractmethod
    async def get_post_thread(self, post_id: str) -> list[HostPost]:
        """Every post in the thread containing post_id, any order."""
        ...

    @abc.abstractmethod
    async def get_posts_since(self, channel_id: str, since: int) -> list[HostPost]:
        ...

    @abc.abstractmethod
    async def get_posts_before(
        self, channel_id: str, post_id: str, page: int, per_page: int
    ) -> list[HostPost]:
        """Posts older than post_id, newest first."""
        ...

    @abc.abstractmethod
    async def add_reaction(self, post_id: str, user_id: str, emoji_name: str) -> None:
        ...

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get_file_info(self, file_id: str) -> FileInfo:
        ...

    @abc.abstractmethod
    async def read_file(self, file_id: str) -> bytes:
        ...

    @abc.abstractmethod
    async def upload_file(self, data: bytes, channel_id: str, filename: str) -> FileInfo:
        ...

    # ------------------------------------------------------------------
    # Users, teams, channels
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> User:
        ...

    @abc.abstractmethod
    async def get_user_by_username(self, username: str) -> User:
        ...

    @abc.abstractmethod
    async def get_user_status(self, user_id: str) -> UserStatus:
        ...

    @abc.abstractmethod
    async def has_permission_to(self, user_id: str, permission: str) -> bool:
        ...

    @abc.abstractmethod
    async def has_permission_to_channel(self, user_id: str, channel_id: str, permission: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_channel(self, channel_id: str) -> Channel:
        ...

    @abc.abstractmethod
    async def get_direct_channel(self, user_a: str, user_b: str) -> Channel:
        ...

    @abc.abstractmethod
    async def get_team(self, team_id: str) -> Team:
        ...

    @abc.abstractmethod
    async def get_team_member(self, team_id: str, user_id: str) -> TeamMember:
        """Raises NotFoundError when the user never joined the team."""
        ...

    # ------------------------------------------------------------------
    # Bots
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def list_bots(self) -> list[BotUser]:
        """Bots owned by this plugin, including deactivated ones."""
        ...

    @abc.abstractmethod
    async def ensure_bot(self, username: str, display_name: str, description: str) -> str:
        """Create (or reactivate) the bot and return its user ID."""
        ...

    @abc.abstractmethod
    async def patch_bot(self, user_id: str, display_name: str, description: str) -> None:
        ...

    @abc.abstractmethod
    async def deactivate_bot(self, user_id: str) -> None:
        ...

    # ------------------------------------------------------------------
    # KV store, websocket, cluster
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def kv_get(self, key: str) -> dict | None:
        ...

    @abc.abstractmethod
    async def kv_set(self, key: str, value: dict) -> None:
        ...

    @abc.abstractmethod
    async def publish_websocket_event(self, event: str, payload: dict, channel_id: str) -> None:
        """Broadcast an event to every client viewing channel_id."""
        ...

    @abc.abstractmethod
    def cluster_mutex(self, key: str):
        """Async context manager holding a cluster-wide lock named key."""
        ...

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get_server_settings(self) -> dict:
        """
        Read-only server settings. Keys used by parley:
          site_name, site_url, default_locale, show_full_name, show_email_address
        """
        ...

    @abc.abstractmethod
    async def get_license_company(self) -> str:
        ...

    @abc.abstractmethod
    async def plugin_http(
        self, method: str, path: str, headers: dict | None = None
    ) -> tuple[int, bytes]:
        """Call a sibling plugin's HTTP API through the host."""
        ...

    @abc.abstractmethod
    async def is_plugin_running(self, plugin_id: str) -> bool:
        ...


async def get_metadata_for_posts(host: HostPlatform, posts: list[HostPost]) -> ThreadData:
    """Sort posts by creation time and load every author."""
    ordered = sorted(posts, key=lambda p: p.create_at)
    users: dict[str, User] = {}
    for post in ordered:
        if post.user_id not in users:
            users[post.user_id] = await host.get_user(post.user_id)
    return ThreadData(posts=ordered, users_by_id=users)


async def get_thread_data(host: HostPlatform, post_id: str) -> ThreadData:
    posts = await host.get_post_thread(post_id)
    return await get_metadata_for_posts(host, posts)
