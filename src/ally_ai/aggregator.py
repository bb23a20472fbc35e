"""Fold a chunk sequence into a finalized assistant message."""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from ally_ai.types import (
    ChatMessage,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    ModelInfo,
    ReasoningChunk,
    ResetChunk,
    StreamChunk,
    ToolCall,
    ToolCallEnd,
    UsageChunk,
    UsageInfo,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]


class ResultStatus(str, Enum):
    COMPLETED = "completed"
    FAILED_NO_CONTENT = "failed_no_content"
    FAILED_PARTIAL = "failed_partial"


@dataclass
class AggregateResult:
    """Outcome of one conversation turn, ready for persistence."""

    status: ResultStatus
    message: ChatMessage | None
    usage: UsageInfo | None = None
    model: str | None = None
    error: ErrorChunk | None = None
    attempts: int = 1
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is ResultStatus.COMPLETED

    @property
    def has_partial_content(self) -> bool:
        return self.status is ResultStatus.FAILED_PARTIAL


@dataclass
class _TurnState:
    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: UsageInfo | None = None
    model: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.content or self.reasoning or self.tool_calls)


class ResponseAggregator:
    """Forwards chunks to a live callback and accumulates the final message.

    Both observe the same ordered sequence. A ``ResetChunk`` discards the
    state of the failed attempt and is forwarded so the UI can clear stale
    partial text.
    """

    def __init__(self, on_chunk: ChunkCallback | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._on_chunk = on_chunk
        self._clock = clock
        self._state = _TurnState()
        self._started = clock()
        self._attempts = 1
        self._terminal: DoneChunk | ErrorChunk | None = None

    async def feed(self, chunk: StreamChunk) -> None:
        if self._terminal is not None:
            logger.warning("Ignoring %s chunk after the stream terminated", chunk.type)
            return

        if self._on_chunk is not None:
            result = self._on_chunk(chunk)
            if inspect.isawaitable(result):
                await result

        if isinstance(chunk, ContentChunk):
            self._state.content.append(chunk.text)
        elif isinstance(chunk, ReasoningChunk):
            self._state.reasoning.append(chunk.text)
        elif isinstance(chunk, ToolCallEnd):
            if chunk.tool_call is not None:
                self._state.tool_calls.append(chunk.tool_call)
        elif isinstance(chunk, UsageChunk):
            self._state.usage = chunk.to_usage_info()
        elif isinstance(chunk, ModelInfo):
            self._state.model = chunk.model
        elif isinstance(chunk, ResetChunk):
            self._state = _TurnState()
            self._attempts = chunk.attempt
        elif isinstance(chunk, (DoneChunk, ErrorChunk)):
            self._terminal = chunk

    async def consume(self, chunks: AsyncIterable[StreamChunk]) -> AggregateResult:
        async for chunk in chunks:
            await self.feed(chunk)
        return self.result()

    def result(self) -> AggregateResult:
        """Build the result. A sequence without a terminal chunk counts as a failure."""
        state = self._state
        terminal = self._terminal
        if terminal is None:
            terminal = ErrorChunk(message="Stream ended without a terminal event", code="incomplete_stream")

        if isinstance(terminal, DoneChunk):
            status = ResultStatus.COMPLETED
        elif state.is_empty:
            status = ResultStatus.FAILED_NO_CONTENT
        else:
            status = ResultStatus.FAILED_PARTIAL

        message = None
        if not state.is_empty or status is ResultStatus.COMPLETED:
            message = ChatMessage(
                role="assistant",
                content="".join(state.content),
                reasoning="".join(state.reasoning) or None,
                tool_calls=list(state.tool_calls) or None,
            )

        return AggregateResult(
            status=status,
            message=message,
            usage=state.usage,
            model=state.model,
            error=terminal if isinstance(terminal, ErrorChunk) else None,
            attempts=self._attempts,
            duration_ms=int((self._clock() - self._started) * 1000),
        )
