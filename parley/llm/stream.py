"""
Text streams flowing out of the language model adapters.

A TextStream is a single-producer / single-consumer asyncio queue of
StreamEvents. The producer is the adapter's task that reads the provider
response; the consumer is usually the streaming coordinator pumping
deltas into a chat post. A well-formed stream is

    Text* (End | Error | ToolCalls)

and the producer stops after the terminal event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

from parley.errors import LLMError
from parley.llm.models import ToolCall

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TEXT = "text"
    END = "end"
    ERROR = "error"
    TOOL_CALLS = "tool_calls"


@dataclass
class StreamEvent:
    type: EventType
    text: str = ""
    error: Exception | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.type != EventType.TEXT

    @classmethod
    def text_chunk(cls, chunk: str) -> "StreamEvent":
        return cls(EventType.TEXT, text=chunk)

    @classmethod
    def end(cls) -> "StreamEvent":
        return cls(EventType.END)

    @classmethod
    def failure(cls, err: Exception) -> "StreamEvent":
        return cls(EventType.ERROR, error=err)

    @classmethod
    def calls(cls, tool_calls: list[ToolCall]) -> "StreamEvent":
        return cls(EventType.TOOL_CALLS, tool_calls=tool_calls)


Producer = Callable[["TextStream"], Awaitable[None]]


class TextStream:
    """Queue of StreamEvents fed by one producer coroutine."""

    def __init__(self):
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._producer: asyncio.Task | None = None
        self._finished = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def start(self, producer: Producer) -> "TextStream":
        """Run producer(self) as a background task."""
        self._producer = asyncio.create_task(self._run(producer))
        return self

    async def _run(self, producer: Producer) -> None:
        try:
            await producer(self)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Stream producer failed: %s", e)
            self.send(StreamEvent.failure(e))
        finally:
            if not self._finished:
                self.send(StreamEvent.failure(LLMError("stream ended without a result")))

    def send(self, event: StreamEvent) -> None:
        """Queue an event. Anything after the terminal event is dropped."""
        if self._finished:
            return
        if event.is_terminal:
            self._finished = True
        self._queue.put_nowait(event)

    @property
    def finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def next_event(self, cancelled: asyncio.Event | None = None) -> StreamEvent | None:
        """
        Wait for the next event.
        Returns None if `cancelled` fires first.
        """
        if cancelled is None:
            return await self._queue.get()
        if cancelled.is_set():
            return None

        getter = asyncio.ensure_future(self._queue.get())
        waiter = asyncio.ensure_future(cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
        if getter in done:
            return getter.result()
        getter.cancel()
        return None

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return

    async def read_all(self) -> str:
        """Concatenate every Text event; raise on Error or ToolCalls."""
        result = []
        async for event in self:
            if event.type == EventType.TEXT:
                result.append(event.text)
            elif event.type == EventType.ERROR:
                raise event.error or LLMError("stream error")
            elif event.type == EventType.TOOL_CALLS:
                raise LLMError("Tool calls are not supported for read all")
        return "".join(result)

    async def close(self) -> None:
        """Cancel the producer, which cancels the upstream request."""
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass


def stream_from_string(text: str) -> TextStream:
    """A finished stream holding one Text event followed by End."""
    stream = TextStream()
    stream.send(StreamEvent.text_chunk(text))
    stream.send(StreamEvent.end())
    return stream
