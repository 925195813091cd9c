"""
Provider-neutral conversation types.

A CompletionRequest is an ordered list of Posts plus the LLMContext the
prompt was rendered with. Adapters translate it to their wire format;
nothing in here knows about any particular provider.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from parley.llm.context import LLMContext

logger = logging.getLogger(__name__)

# Characters per token used when cutting a partially kept message.
CHARS_PER_TOKEN = 4


class PostRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERROR = "error"
    SUCCESS = "success"


@dataclass
class File:
    """
    An attachment carried into the prompt.
    `reader` returns the file bytes; it may only be called once.
    """
    mime_type: str
    size: int
    reader: Callable[[], bytes] | None = None
    name: str = ""

    def read(self) -> bytes:
        if self.reader is None:
            raise ValueError("file has no reader")
        reader, self.reader = self.reader, None
        return reader()


@dataclass
class ToolCall:
    """A model-issued tool invocation. An empty result means unresolved."""
    id: str
    name: str
    description: str = ""
    arguments: str = "{}"
    result: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING

    def to_dict(self) -> dict:
        try:
            args = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            args = self.arguments
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "arguments": args,
            "result": self.result,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        args = data.get("arguments", {})
        if not isinstance(args, str):
            args = json.dumps(args)
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            arguments=args,
            result=data.get("result", ""),
            status=ToolCallStatus(data.get("status", ToolCallStatus.PENDING.value)),
        )


def tool_calls_to_json(calls: list[ToolCall]) -> str:
    return json.dumps([c.to_dict() for c in calls])


def tool_calls_from_json(raw: str) -> list[ToolCall]:
    data = json.loads(raw) if raw else []
    if not isinstance(data, list):
        raise ValueError("tool call payload must be a JSON array")
    return [ToolCall.from_dict(d) for d in data]


@dataclass
class Post:
    role: PostRole
    message: str = ""
    files: list[File] = field(default_factory=list)
    tool_use: list[ToolCall] = field(default_factory=list)


@dataclass
class CompletionRequest:
    posts: list[Post] = field(default_factory=list)
    context: "LLMContext | None" = None

    def truncate(self, max_tokens: int, count_tokens: Callable[[str], int]) -> bool:
        """
        Keep the newest posts that fit in max_tokens.

        Walks from the newest post backwards. The post that crosses the
        budget is kept with its leading characters cut so roughly the
        remaining budget survives. Returns True if anything was dropped
        or cut.
        """
        kept: list[Post] = []
        total = 0
        for post in reversed(self.posts):
            if total >= max_tokens:
                kept.reverse()
                self.posts = kept
                return True
            post_tokens = count_tokens(post.message)
            if total + post_tokens > max_tokens:
                cut = (post_tokens - (max_tokens - total)) * CHARS_PER_TOKEN
                post.message = post.message[cut:].strip()
                kept.append(post)
                kept.reverse()
                self.posts = kept
                return True
            total += post_tokens
            kept.append(post)

        kept.reverse()
        self.posts = kept
        return False

    def extract_system_message(self) -> str:
        for post in self.posts:
            if post.role == PostRole.SYSTEM:
                return post.message
        return ""

    def __str__(self) -> str:
        labels = {
            PostRole.USER: "User",
            PostRole.ASSISTANT: "Bot",
            PostRole.SYSTEM: "System",
        }
        parts = ["--- Conversation ---"]
        for post in self.posts:
            parts.append(f"\n--- {labels.get(post.role, '<Unknown>')} ---\n")
            parts.append(post.message)
        parts.append("\n--- Context ---\n")
        parts.append(f"{self.context}\n")
        return "".join(parts)
