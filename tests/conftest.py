"""
Shared fixtures: an in-memory host platform and a scripted language model.
"""

import itertools
from contextlib import asynccontextmanager
from unittest.mock import patch

import httpx
import pytest

from parley.backends.base import LanguageModel, ServiceConfig
from parley.bots.models import Bot, BotConfig
from parley.bots.registry import BotRegistry
from parley.conversations.conversations import Conversations
from parley.errors import NotFoundError
from parley.host.base import HostPlatform
from parley.host.models import (
    CHANNEL_DIRECT,
    CHANNEL_OPEN,
    BotUser,
    Channel,
    FileInfo,
    HostPost,
    Team,
    TeamMember,
    User,
    UserStatus,
    dm_channel_name,
)
from parley.llm.context import ContextFactory
from parley.llm.prompts import PromptRegistry
from parley.llm.stream import StreamEvent, TextStream
from parley.streaming import StreamingCoordinator


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------

class FakeLLM(LanguageModel):
    """
    Replies from a script, one entry per call:
      str           -> Text + End
      list          -> ToolCalls
      Exception     -> Error
    Once the script runs out every call answers `default`.
    """

    def __init__(self, responses=None, default="ok", limit=100000):
        self.responses = list(responses or [])
        self.default = default
        self.limit = limit
        self.requests = []
        self.opts = []

    async def chat_completion(self, request, **opts):
        self.requests.append(request)
        self.opts.append(opts)
        reply = self.responses.pop(0) if self.responses else self.default
        stream = TextStream()
        if isinstance(reply, Exception):
            stream.send(StreamEvent.failure(reply))
        elif isinstance(reply, list):
            stream.send(StreamEvent.calls(reply))
        else:
            stream.send(StreamEvent.text_chunk(reply))
            stream.send(StreamEvent.end())
        return stream

    def count_tokens(self, text):
        return len(text) // 4

    def input_token_limit(self):
        return self.limit


# ---------------------------------------------------------------------------
# In-memory host
# ---------------------------------------------------------------------------

class FakeHost(HostPlatform):
    def __init__(self):
        self._ids = itertools.count(1)
        self._clock = itertools.count(1000, 1000)
        self.posts: dict[str, HostPost] = {}
        self.channels: dict[str, Channel] = {}
        self.users: dict[str, User] = {}
        self.statuses: dict[str, UserStatus] = {}
        self.teams: dict[str, Team] = {}
        self.team_members: set[tuple[str, str]] = set()
        self.files: dict[str, FileInfo] = {}
        self.file_data: dict[str, bytes] = {}
        self.bots: dict[str, BotUser] = {}
        self.kv: dict[str, dict] = {}
        self.events: list[tuple[str, dict, str]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.updates: list[HostPost] = []
        self.denied_channels: set[tuple[str, str]] = set()
        self.permissions: set[tuple[str, str]] = set()
        self.settings = {
            "site_name": "Test Server",
            "site_url": "http://chat.example.com",
            "default_locale": "en",
            "show_full_name": True,
            "show_email_address": False,
        }
        self.plugin_responses: dict[str, tuple[int, bytes]] = {}
        self.plugin_calls: list[tuple[str, str, dict]] = []
        self.running_plugins: set[str] = set()

    def next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    # Setup helpers ---------------------------------------------------------

    def add_user(self, user_id: str, username: str = "", **kwargs) -> User:
        user = User(id=user_id, username=username or user_id, **kwargs)
        self.users[user_id] = user
        return user

    def add_channel(self, channel_id: str, type: str = CHANNEL_OPEN, team_id: str = "team1", **kwargs) -> Channel:
        channel = Channel(id=channel_id, type=type, team_id=team_id, **kwargs)
        self.channels[channel_id] = channel
        return channel

    def add_post(self, **kwargs) -> HostPost:
        post = HostPost(**kwargs)
        if not post.id:
            post.id = self.next_id("post")
        if not post.create_at:
            post.create_at = next(self._clock)
        self.posts[post.id] = post
        return post.clone()

    # Posts -----------------------------------------------------------------

    async def create_post(self, post: HostPost) -> HostPost:
        created = post.clone()
        created.id = created.id or self.next_id("post")
        created.create_at = next(self._clock)
        self.posts[created.id] = created
        return created.clone()

    async def update_post(self, post: HostPost) -> HostPost:
        if post.id not in self.posts:
            raise NotFoundError(f"post {post.id} not found")
        self.posts[post.id] = post.clone()
        self.updates.append(post.clone())
        return post.clone()

    async def get_post(self, post_id: str) -> HostPost:
        if post_id not in self.posts:
            raise NotFoundError(f"post {post_id} not found")
        return self.posts[post_id].clone()

    async def dm(self, sender_id: str, receiver_id: str, post: HostPost) -> HostPost:
        channel = await self.get_direct_channel(sender_id, receiver_id)
        post.channel_id = channel.id
        return await self.create_post(post)

    async def get_post_thread(self, post_id: str) -> list[HostPost]:
        root = (await self.get_post(post_id)).thread_root
        return [p.clone() for p in self.posts.values() if p.id == root or p.root_id == root]

    async def get_posts_since(self, channel_id: str, since: int) -> list[HostPost]:
        return [p.clone() for p in self.posts.values() if p.channel_id == channel_id and p.create_at > since]

    async def get_posts_before(self, channel_id: str, post_id: str, page: int, per_page: int) -> list[HostPost]:
        posts = [p for p in self.posts.values() if p.channel_id == channel_id]
        if post_id:
            anchor = self.posts[post_id].create_at
            posts = [p for p in posts if p.create_at < anchor]
        posts.sort(key=lambda p: p.create_at, reverse=True)
        return [p.clone() for p in posts[page * per_page:(page + 1) * per_page]]

    async def add_reaction(self, post_id: str, user_id: str, emoji_name: str) -> None:
        self.reactions.append((post_id, user_id, emoji_name))

    # Files -----------------------------------------------------------------

    async def get_file_info(self, file_id: str) -> FileInfo:
        if file_id not in self.files:
            raise NotFoundError(f"file {file_id} not found")
        return self.files[file_id]

    async def read_file(self, file_id: str) -> bytes:
        if file_id not in self.file_data:
            raise NotFoundError(f"file {file_id} not found")
        return self.file_data[file_id]

    async def upload_file(self, data: bytes, channel_id: str, filename: str) -> FileInfo:
        info = FileInfo(id=self.next_id("file"), name=filename, channel_id=channel_id, size=len(data))
        self.files[info.id] = info
        self.file_data[info.id] = data
        return info

    # Users, teams, channels ------------------------------------------------

    async def get_user(self, user_id: str) -> User:
        if user_id not in self.users:
            raise NotFoundError(f"user {user_id} not found")
        return self.users[user_id]

    async def get_user_by_username(self, username: str) -> User:
        for user in self.users.values():
            if user.username == username:
                return user
        raise NotFoundError(f"user {username} not found")

    async def get_user_status(self, user_id: str) -> UserStatus:
        return self.statuses.get(user_id, UserStatus(user_id=user_id, status="online"))

    async def has_permission_to(self, user_id: str, permission: str) -> bool:
        return (user_id, permission) in self.permissions

    async def has_permission_to_channel(self, user_id: str, channel_id: str, permission: str) -> bool:
        return (user_id, channel_id) not in self.denied_channels

    async def get_channel(self, channel_id: str) -> Channel:
        if channel_id not in self.channels:
            raise NotFoundError(f"channel {channel_id} not found")
        return self.channels[channel_id]

    async def get_direct_channel(self, user_a: str, user_b: str) -> Channel:
        name = dm_channel_name(user_a, user_b)
        for channel in self.channels.values():
            if channel.type == CHANNEL_DIRECT and channel.name == name:
                return channel
        return self.add_channel(self.next_id("dm"), type=CHANNEL_DIRECT, team_id="", name=name)

    async def get_team(self, team_id: str) -> Team:
        return self.teams.get(team_id, Team(id=team_id, name=team_id, display_name=team_id.title()))

    async def get_team_member(self, team_id: str, user_id: str) -> TeamMember:
        if (team_id, user_id) not in self.team_members:
            raise NotFoundError("not a team member")
        return TeamMember(team_id=team_id, user_id=user_id)

    # Bots ------------------------------------------------------------------

    async def list_bots(self) -> list[BotUser]:
        return list(self.bots.values())

    async def ensure_bot(self, username: str, display_name: str, description: str) -> str:
        for bot in self.bots.values():
            if bot.username == username:
                bot.delete_at = 0
                return bot.user_id
        user_id = f"{username}-id"
        self.bots[user_id] = BotUser(user_id=user_id, username=username,
                                     display_name=display_name, description=description)
        self.add_user(user_id, username, is_bot=True)
        return user_id

    async def patch_bot(self, user_id: str, display_name: str, description: str) -> None:
        self.bots[user_id].display_name = display_name
        self.bots[user_id].description = description

    async def deactivate_bot(self, user_id: str) -> None:
        self.bots[user_id].delete_at = 1

    # KV, websocket, cluster ------------------------------------------------

    async def kv_get(self, key: str) -> dict | None:
        return self.kv.get(key)

    async def kv_set(self, key: str, value: dict) -> None:
        self.kv[key] = dict(value)

    async def publish_websocket_event(self, event: str, payload: dict, channel_id: str) -> None:
        self.events.append((event, dict(payload), channel_id))

    def cluster_mutex(self, key: str):
        @asynccontextmanager
        async def held():
            yield

        return held()

    # Settings --------------------------------------------------------------

    async def get_server_settings(self) -> dict:
        return dict(self.settings)

    async def get_license_company(self) -> str:
        return "Example Corp"

    async def plugin_http(self, method: str, path: str, headers: dict | None = None) -> tuple[int, bytes]:
        self.plugin_calls.append((method, path, dict(headers or {})))
        for prefix, response in self.plugin_responses.items():
            if path.startswith(prefix):
                return response
        return 404, b"not found"

    async def is_plugin_running(self, plugin_id: str) -> bool:
        return plugin_id in self.running_plugins


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_bot(host: FakeHost, name: str = "ai", llm=None, **config) -> Bot:
    """Register a bot account on host and return the live Bot."""
    service = config.pop("service", None) or ServiceConfig(type="openai", api_key="sk-test", default_model="gpt-4o")
    cfg = BotConfig(name=name, display_name=name.upper(), service=service, **config)
    user_id = f"{name}-id"
    account = BotUser(user_id=user_id, username=name, display_name=cfg.display_name)
    host.bots[user_id] = account
    host.add_user(user_id, name, is_bot=True)
    return Bot(cfg, account, llm if llm is not None else FakeLLM())


def make_registry(host: FakeHost, *bots: Bot) -> BotRegistry:
    registry = BotRegistry(host, model_factory=lambda service: FakeLLM())
    registry.set_bots(list(bots))
    return registry


@pytest.fixture
def host():
    h = FakeHost()
    h.add_user("user1", "alice", first_name="Alice", last_name="Smith", locale="en")
    h.add_user("user2", "bob", first_name="Bob")
    h.add_channel("chan1", name="town-square", display_name="Town Square")
    return h


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def bot(host, llm):
    return make_bot(host, "ai", llm)


def make_conversations(host: FakeHost, registry: BotRegistry, store=None, tool_provider=None) -> Conversations:
    factory = ContextFactory(host, tool_provider=tool_provider)
    return Conversations(host, PromptRegistry(), StreamingCoordinator(host), factory, registry, store)


_RealAsyncClient = httpx.AsyncClient


def mock_httpx(module: str, handler, seen: list):
    """Patch module's httpx.AsyncClient with one served by handler via MockTransport."""

    def recording(request):
        seen.append(request)
        return handler(request)

    def factory(*args, **kwargs):
        kwargs.pop("transport", None)
        return _RealAsyncClient(*args, transport=httpx.MockTransport(recording), **kwargs)

    return patch(f"{module}.httpx.AsyncClient", side_effect=factory)
