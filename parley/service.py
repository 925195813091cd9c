"""
Service: builds every parley component from config and a host platform.

This is the single place where concrete classes are chosen; everything
else receives its collaborators through constructors. The FastAPI app
and host event hooks only ever talk to a Service.
"""

from __future__ import annotations

import logging

from parley.analysis.meetings import Meetings
from parley.analysis.threads import ThreadAnalysis
from parley.backends import make_embedding_provider
from parley.bots.models import BotConfig
from parley.bots.registry import BotRegistry
from parley.chunking import ChunkingOptions
from parley.conversations.conversations import Conversations
from parley.conversations.handle_messages import MessageHandler
from parley.errors import ParleyError
from parley.host.base import HostPlatform
from parley.host.models import Channel, HostPost
from parley.indexing.post_indexing import PostIndexer
from parley.indexing.reindex_job import ReindexJob
from parley.llm.context import ContextFactory
from parley.llm.models import CompletionRequest, Post, PostRole
from parley.llm.prompts import PromptRegistry
from parley.mcp import MCPClientManager, MCPConfig
from parley.search import Search
from parley.storage.backends import make_vector_store
from parley.storage.embedding_search import EmbeddingSearch
from parley.storage.sqlite_store import SQLiteStore
from parley.streaming import StreamingCoordinator
from parley.tools.provider import ToolProvider

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = "./data/parley.db"
DEFAULT_CHROMA_PATH = "./data/chroma"


def _make_embedding_search(cfg: dict, store: SQLiteStore) -> EmbeddingSearch | None:
    es_cfg = cfg.get("embedding_search") or {}
    if not es_cfg.get("type"):
        return None

    storage_cfg = cfg.get("storage") or {}
    provider = make_embedding_provider(es_cfg.get("embedding_provider") or {})

    vector_cfg = es_cfg.get("vector_store") or {}
    store_type = vector_cfg.get("type", "sqlvec")
    if store_type == "chromadb":
        vectors = make_vector_store(
            "chromadb",
            path=storage_cfg.get("chroma_path", DEFAULT_CHROMA_PATH),
            membership=store,
        )
    else:
        vectors = make_vector_store(
            store_type,
            db_path=storage_cfg.get("sqlite_path", DEFAULT_SQLITE_PATH),
            dimensions=int(es_cfg.get("dimensions") or provider.dimensions()),
        )
    return EmbeddingSearch(vectors, provider, ChunkingOptions.from_dict(es_cfg.get("chunking_options")))


class Service:
    def __init__(self, host: HostPlatform, cfg: dict, store: SQLiteStore | None = None,
                 embedding_search: EmbeddingSearch | None = None, bots: BotRegistry | None = None):
        self.host = host
        self.cfg = cfg

        storage_cfg = cfg.get("storage") or {}
        self.store = store or SQLiteStore(storage_cfg.get("sqlite_path", DEFAULT_SQLITE_PATH))

        if embedding_search is None:
            try:
                embedding_search = _make_embedding_search(cfg, self.store)
            except Exception as e:
                logger.error("Search is disabled, failed to initialise embedding search: %s", e)
        self.embedding_search = embedding_search

        self.prompts = PromptRegistry()
        self.bots = bots or BotRegistry(host, enable_llm_trace=lambda: bool(self.cfg.get("enable_llm_trace")))

        self.tools = ToolProvider(host, embedding_search)
        self.mcp = MCPClientManager(MCPConfig.from_dict(cfg.get("mcp")))
        self.context_factory = ContextFactory(
            host,
            tool_provider=self.tools,
            mcp_tool_provider=self.mcp,
            enable_trace=lambda: bool(self.cfg.get("enable_llm_trace")),
        )

        self.streaming = StreamingCoordinator(host)
        self.conversations = Conversations(
            host, self.prompts, self.streaming, self.context_factory, self.bots, self.store
        )
        self.messages = MessageHandler(self.conversations)
        self.threads = ThreadAnalysis(host, self.prompts, self.streaming, self.context_factory, self.conversations)
        self.meetings = Meetings(host, self.prompts, self.streaming, self.context_factory)
        self.search = Search(host, embedding_search, self.prompts, self.streaming)
        self.indexer = PostIndexer(embedding_search, self.bots)
        self.reindex = ReindexJob(host, embedding_search, self.store, self.bots)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def bot_configs(self) -> list[BotConfig]:
        return [BotConfig.from_dict(b) for b in self.cfg.get("bots") or []]

    async def start(self) -> None:
        await self.bots.ensure_bots(self.bot_configs())
        await self.tools.refresh()
        if self.mcp.config.enabled:
            self.mcp.start()
        logger.info("parley service started (%d bots)", len(self.bots.get_all_bots()))

    async def stop(self) -> None:
        await self.mcp.close()
        logger.info("parley service stopped")

    async def on_config_change(self, cfg: dict) -> None:
        self.cfg = cfg
        await self.bots.ensure_bots(self.bot_configs())
        await self.mcp.reinit(MCPConfig.from_dict(cfg.get("mcp")))
        if self.embedding_search is not None:
            es_cfg = cfg.get("embedding_search") or {}
            self.embedding_search.set_chunking_options(ChunkingOptions.from_dict(es_cfg.get("chunking_options")))

    # ------------------------------------------------------------------
    # Host hooks
    # ------------------------------------------------------------------

    async def on_post_created(self, post: HostPost) -> HostPost | None:
        """Mirror, index, then route a new post. Never raises."""
        channel: Channel | None = None
        try:
            channel = await self.host.get_channel(post.channel_id)
            self.store.mirror_channel(channel)
            self.store.mirror_post(post)
        except Exception as e:
            logger.error("Failed to mirror post %s: %s", post.id, e)

        if channel is not None:
            await self.indexer.index_post(post, channel)

        return await self.messages.message_has_been_posted(post)

    async def on_post_deleted(self, post: HostPost) -> None:
        await self.indexer.delete_post(post.id)
        try:
            self.store.delete_title(post.id)
        except Exception as e:
            logger.error("Failed to delete title for %s: %s", post.id, e)

    # ------------------------------------------------------------------
    # Inter-plugin
    # ------------------------------------------------------------------

    async def completion_for_inter_plugin(
        self,
        system_prompt: str,
        user_prompt: str,
        requester_user_id: str,
        bot_username: str = "",
        parameters: dict | None = None,
    ) -> str:
        bot = self.bots.get_bot_by_username_or_first(bot_username or self.cfg.get("default_bot_name", ""))
        if bot is None:
            raise ParleyError("no bots available")

        user = await self.host.get_user(requester_user_id)
        context = await self.context_factory.build_for_user_request(bot, user, None, parameters=parameters)

        posts = []
        if system_prompt:
            posts.append(Post(role=PostRole.SYSTEM, message=self.prompts.format_inline(system_prompt, context)))
        posts.append(Post(role=PostRole.USER, message=self.prompts.format_inline(user_prompt, context)))
        return await bot.llm.chat_completion_no_stream(CompletionRequest(posts=posts, context=context))

    async def drain(self) -> None:
        """Wait for background streams, titles and searches."""
        await self.streaming.drain()
        await self.conversations.drain()
        await self.search.drain()
