"""
BotRegistry: reconciles configured bots with host bot accounts and
answers "which bot?" lookups for the router, API and tools.

ensure_bots() runs under the cluster mutex `ai_ensure_bots` so only one
node reconciles at a time. The live bot list is swapped as a whole under
a lock; readers take a reference to the current tuple.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from parley.backends import make_language_model
from parley.backends.base import LanguageModel, ServiceConfig
from parley.bots.mentions import user_is_mentioned_markdown
from parley.bots.models import Bot, BotConfig
from parley.errors import ParleyError
from parley.host.base import HostPlatform
from parley.host.models import Channel, is_dm_with
from parley.llm.logging_wrapper import LanguageModelLogWrapper
from parley.llm.truncation import TruncationWrapper

logger = logging.getLogger(__name__)

ENSURE_BOTS_MUTEX = "ai_ensure_bots"


class BotRegistry:
    def __init__(
        self,
        host: HostPlatform,
        enable_llm_trace: Callable[[], bool] | None = None,
        model_factory: Callable[[ServiceConfig], LanguageModel] = make_language_model,
    ):
        self.host = host
        self.enable_llm_trace = enable_llm_trace or (lambda: False)
        self.model_factory = model_factory
        self._lock = threading.Lock()
        self._bots: tuple[Bot, ...] = ()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def ensure_bots(self, cfg_bots: list[BotConfig]) -> None:
        async with self.host.cluster_mutex(ENSURE_BOTS_MUTEX):
            previous = await self.host.list_bots()

            configured: dict[str, BotConfig] = {}
            for cfg in cfg_bots:
                if not cfg.is_valid():
                    logger.error("Configured bot is not valid: name=%s display_name=%s", cfg.name, cfg.display_name)
                    continue
                if cfg.name in configured:
                    # Reusing a name would let one config overwrite another bot's account
                    raise ParleyError(f"duplicate bot name: {cfg.name}")
                configured[cfg.name] = cfg

            previous_by_username = {b.username: b for b in previous}

            for existing in previous:
                if existing.username not in configured and existing.delete_at == 0:
                    try:
                        await self.host.deactivate_bot(existing.user_id)
                    except Exception as e:
                        logger.error("Failed to deactivate bot %s: %s", existing.username, e)

            for cfg in configured.values():
                description = f"Powered by {cfg.service.type}"
                prev = previous_by_username.get(cfg.name)
                try:
                    if prev is not None:
                        await self.host.patch_bot(prev.user_id, cfg.display_name, description)
                        if prev.delete_at != 0:
                            await self.host.ensure_bot(cfg.name, cfg.display_name, description)
                    else:
                        await self.host.ensure_bot(cfg.name, cfg.display_name, description)
                except Exception as e:
                    logger.error("Failed to ensure bot %s: %s", cfg.name, e)

            await self.update_bots_cache(list(configured.values()))

    async def update_bots_cache(self, cfg_bots: list[BotConfig]) -> None:
        accounts = [b for b in await self.host.list_bots() if b.delete_at == 0]
        bots = []
        for cfg in cfg_bots:
            for account in accounts:
                if account.username == cfg.name:
                    bots.append(Bot(cfg, account, self._make_llm(cfg.service)))
        with self._lock:
            self._bots = tuple(bots)
        logger.info("Bot cache updated: %s", ", ".join(b.config.name for b in bots) or "(none)")

    def _make_llm(self, service: ServiceConfig) -> LanguageModel:
        model: LanguageModel = TruncationWrapper(self.model_factory(service))
        if self.enable_llm_trace():
            model = LanguageModelLogWrapper(model)
        return model

    def set_bots(self, bots: list[Bot]) -> None:
        with self._lock:
            self._bots = tuple(bots)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_all_bots(self) -> list[Bot]:
        return list(self._bots)

    def get_bot_by_username(self, username: str) -> Bot | None:
        for bot in self._bots:
            if bot.config.name == username:
                return bot
        return None

    def get_bot_by_username_or_first(self, username: str) -> Bot | None:
        bot = self.get_bot_by_username(username)
        if bot is not None:
            return bot
        bots = self._bots
        return bots[0] if bots else None

    def get_bot_by_id(self, user_id: str) -> Bot | None:
        for bot in self._bots:
            if bot.user_id == user_id:
                return bot
        return None

    def get_bot_for_dm_channel(self, channel: Channel) -> Bot | None:
        for bot in self._bots:
            if is_dm_with(bot.user_id, channel):
                return bot
        return None

    def get_bot_mentioned(self, text: str) -> Bot | None:
        for bot in self._bots:
            if user_is_mentioned_markdown(text, bot.username):
                return bot
        return None

    def is_any_bot(self, user_id: str) -> bool:
        return self.get_bot_by_id(user_id) is not None
