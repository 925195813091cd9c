"""
Emoji reactions chosen by the model.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from parley.errors import LLMError
from parley.host.base import HostPlatform
from parley.llm.context import LLMContext
from parley.llm.models import CompletionRequest, Post, PostRole
from parley.llm.prompts import PROMPT_EMOJI_SELECT, PromptRegistry

logger = logging.getLogger(__name__)

EMOJI_MAX_TOKENS = 25
_EMOJI_FILE = Path(__file__).parent / "system_emoji.txt"


@lru_cache(maxsize=1)
def system_emoji() -> frozenset[str]:
    names = set()
    for line in _EMOJI_FILE.read_text(encoding="utf-8").splitlines():
        if line.startswith("#"):
            continue
        names.update(line.split())
    return frozenset(names)


def is_system_emoji(name: str) -> bool:
    return name in system_emoji()


class React:
    def __init__(self, llm, prompts: PromptRegistry):
        self.llm = llm
        self.prompts = prompts

    async def resolve(self, message: str, context: LLMContext) -> str:
        """Ask the model for a single emoji name that fits message."""
        context.parameters = {"Message": message}
        system = self.prompts.format(PROMPT_EMOJI_SELECT, context)
        request = CompletionRequest(
            posts=[Post(role=PostRole.SYSTEM, message=system), Post(role=PostRole.USER, message=message)],
            context=context,
        )
        try:
            raw = await self.llm.chat_completion_no_stream(request, max_generated_tokens=EMOJI_MAX_TOKENS)
        except Exception as e:
            raise LLMError(f"failed to get emoji from LLM: {e}") from e

        name = raw.strip().strip(":")
        if not is_system_emoji(name):
            raise LLMError(f"LLM returned something other than emoji: {name}")
        return name


async def react_to_post(host: HostPlatform, bot, post_id: str, message: str, context: LLMContext, prompts: PromptRegistry) -> str:
    """Pick an emoji for message and add it to post_id as the bot."""
    name = await React(bot.llm, prompts).resolve(message, context)
    await host.add_reaction(post_id, bot.user_id, name)
    logger.debug("Reacted to %s with :%s:", post_id, name)
    return name
