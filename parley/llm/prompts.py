"""
Prompt registry.

Templates live in parley/prompts/*.tmpl and are loaded once at startup.
They use str.format placeholders filled from LLMContext.template_vars()
(server, user, bot, channel fields plus every context parameter). Unknown
placeholders render as empty strings.

Partials are rendered first and exposed to every other template under
their own name, so `{standard_personality}` inside a system prompt pulls
in the shared personality block. Rendered output is stripped.
"""

from __future__ import annotations

import logging
import string
from pathlib import Path
from typing import TYPE_CHECKING

from parley.errors import TemplateNotFoundError

if TYPE_CHECKING:
    from parley.llm.context import LLMContext

logger = logging.getLogger(__name__)

PROMPT_EXTENSION = ".tmpl"
PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

# Rendered in this order; later partials may use earlier ones.
PARTIALS = ("locale", "standard_personality")

PROMPT_DIRECT_MESSAGE_QUESTION = "direct_message_question_system"
PROMPT_EMOJI_SELECT = "emoji_select_system"
PROMPT_FIND_ACTION_ITEMS = "find_action_items_system"
PROMPT_FIND_OPEN_QUESTIONS = "find_open_questions_system"
PROMPT_MEETING_SUMMARY = "meeting_summary_system"
PROMPT_MEETING_SUMMARY_USER = "meeting_summary_user"
PROMPT_SEARCH_SYSTEM = "search_system"
PROMPT_SUMMARIZE_CHANNEL_RANGE = "summarize_channel_range_system"
PROMPT_SUMMARIZE_CHANNEL_SINCE = "summarize_channel_since_system"
PROMPT_SUMMARIZE_CHUNK = "summarize_chunk_system"
PROMPT_SUMMARIZE_THREAD = "summarize_thread_system"
PROMPT_THREAD_USER = "thread_user"


class _Vars(dict):
    def __missing__(self, key):
        return ""


class PromptRegistry:
    """Named templates rendered against an LLMContext."""

    def __init__(self, directory: Path | None = None):
        self.directory = Path(directory) if directory else PROMPTS_DIR
        self._templates: dict[str, str] = {}
        self._formatter = string.Formatter()
        self._load()

    def _load(self) -> None:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Prompt directory not found: {self.directory}")
        for path in sorted(self.directory.glob(f"*{PROMPT_EXTENSION}")):
            self._templates[path.stem] = path.read_text(encoding="utf-8")
        logger.info("Loaded %d prompt templates from %s", len(self._templates), self.directory)

    def names(self) -> list[str]:
        return sorted(self._templates)

    def _vars(self, context: "LLMContext | None") -> _Vars:
        values = _Vars(context.template_vars() if context is not None else {})
        for name in PARTIALS:
            source = self._templates.get(name)
            if source is not None:
                values[name] = self._render(source, values)
        return values

    def _render(self, source: str, values: _Vars) -> str:
        return self._formatter.vformat(source, (), values).strip()

    def format(self, name: str, context: "LLMContext | None") -> str:
        source = self._templates.get(name)
        if source is None:
            raise TemplateNotFoundError(name)
        return self._render(source, self._vars(context))

    def format_inline(self, source: str, context: "LLMContext | None") -> str:
        """Render ad-hoc template text with the same variables and partials."""
        return self._render(source, self._vars(context))
