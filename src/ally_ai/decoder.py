"""Decode OpenAI-compatible server-sent events into stream chunks."""

from __future__ import annotations

import json
import logging
from typing import Any

from ally_ai.errors import ApiError, ProtocolViolation
from ally_ai.types import (
    CompletionResponse,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    FunctionCall,
    ModelInfo,
    ReasoningChunk,
    StreamChunk,
    ToolCall,
    ToolCallArguments,
    ToolCallEnd,
    ToolCallStart,
    UsageChunk,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MALFORMED_EVENTS = 3


class ToolCallAssembler:
    """Buffers streamed tool-call arguments per call id.

    Fragments are concatenated in arrival order and never parsed; the
    arguments only become a ``ToolCall`` when the call is ended.
    """

    def __init__(self) -> None:
        self._names: dict[str, str] = {}
        self._arguments: dict[str, list[str]] = {}

    @property
    def open_ids(self) -> list[str]:
        return list(self._names)

    def start(self, call_id: str, name: str) -> None:
        if call_id in self._names:
            if name:
                self._names[call_id] = name
            return
        self._names[call_id] = name
        self._arguments[call_id] = []

    def append(self, call_id: str, fragment: str) -> None:
        if call_id not in self._names:
            raise ProtocolViolation(f"Arguments for tool call '{call_id}' arrived before it started")
        self._arguments[call_id].append(fragment)

    def end(self, call_id: str) -> ToolCall:
        if call_id not in self._names:
            raise ProtocolViolation(f"Tool call '{call_id}' ended before it started")
        name = self._names.pop(call_id)
        arguments = "".join(self._arguments.pop(call_id))
        return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))

    def end_all(self) -> list[ToolCall]:
        return [self.end(call_id) for call_id in self.open_ids]


class ThinkTagSplitter:
    """Splits ``<think>...</think>`` spans out of content deltas.

    Tags may be split across deltas, so a trailing partial tag is held back
    until the next delta decides it.
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self) -> None:
        self._in_think = False
        self._pending = ""

    def feed(self, text: str) -> list[tuple[bool, str]]:
        """Return ``(is_reasoning, text)`` segments in order."""
        buf = self._pending + text
        self._pending = ""
        segments: list[tuple[bool, str]] = []
        while buf:
            tag = self.CLOSE if self._in_think else self.OPEN
            idx = buf.find(tag)
            if idx >= 0:
                if idx:
                    segments.append((self._in_think, buf[:idx]))
                buf = buf[idx + len(tag) :]
                self._in_think = not self._in_think
                continue
            keep = _partial_suffix(buf, tag)
            if len(buf) > keep:
                segments.append((self._in_think, buf[: len(buf) - keep]))
            self._pending = buf[len(buf) - keep :]
            break
        return segments

    def flush(self) -> list[tuple[bool, str]]:
        pending, self._pending = self._pending, ""
        return [(self._in_think, pending)] if pending else []


def _partial_suffix(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if tag.startswith(text[-size:]):
            return size
    return 0


class StreamDecoder:
    """Stateful decoder for one streamed completion.

    Feed it the response body line by line and call :meth:`finish` at end of
    body. It guarantees that exactly one ``DoneChunk`` or ``ErrorChunk`` is
    produced and that nothing follows it.

    ``route_reasoning`` surfaces ``reasoning_content``/``reasoning`` deltas as
    ``ReasoningChunk``; without it they are dropped. ``parse_think_tags``
    additionally moves ``<think>`` spans found inside content to reasoning.
    Both are decided by model configuration, never by sniffing content.
    """

    def __init__(
        self,
        *,
        route_reasoning: bool = False,
        parse_think_tags: bool = False,
        max_malformed_events: int = DEFAULT_MAX_MALFORMED_EVENTS,
    ) -> None:
        self.route_reasoning = route_reasoning
        self.max_malformed_events = max_malformed_events
        self.malformed_events = 0
        self.finished = False
        self.finish_reason: str | None = None
        self._tools = ToolCallAssembler()
        self._index_to_id: dict[int, str] = {}
        self._think = ThinkTagSplitter() if parse_think_tags else None
        self._content_started = False
        self._model: str | None = None
        self._event_type: str | None = None

    def feed_line(self, line: str) -> list[StreamChunk]:
        """Decode one line of a ``text/event-stream`` body."""
        if self.finished:
            return []
        line = line.rstrip("\r\n")
        if not line:
            self._event_type = None
            return []
        if line.startswith(":"):
            return []
        if line.startswith("event:"):
            self._event_type = line[len("event:") :].strip()
            return []
        if not line.startswith("data:"):
            return []

        data = line[len("data:") :].strip()
        event_type, self._event_type = self._event_type, None
        return self.decode_event(data, event_type=event_type)

    def decode_event(self, data: str, *, event_type: str | None = None) -> list[StreamChunk]:
        """Decode the payload of a single ``data:`` event."""
        if self.finished:
            return []
        if data == "[DONE]":
            chunks = self._flush_content()
            chunks.extend(self._end_open_tool_calls())
            return self._terminate(chunks, DoneChunk())

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            event = None
        if not isinstance(event, dict):
            return self._malformed(data)

        if event.get("error") or event_type == "error":
            return self._terminate([], ApiError.from_payload(event).to_chunk())

        try:
            _check_shape(event)
        except ValueError:
            return self._malformed(data)

        try:
            return self._decode_delta(event)
        except ProtocolViolation as exc:
            logger.warning("Stream protocol violation: %s", exc)
            return self._terminate([], ErrorChunk(message=str(exc), code="protocol_violation", retryable=False))

    def finish(self) -> list[StreamChunk]:
        """Call at end of body. A stream that ends without [DONE] was dropped."""
        if self.finished:
            return []
        chunks = self._flush_content()
        return self._terminate(
            chunks,
            ErrorChunk(
                message="Connection closed before the stream completed",
                code="connection_closed",
                retryable=True,
            ),
        )

    def _decode_delta(self, event: dict[str, Any]) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []

        model = event.get("model")
        if isinstance(model, str) and model and model != self._model:
            self._model = model
            chunks.append(ModelInfo(model=model))

        choices = event.get("choices") or []
        if choices:
            choice = choices[0]
            delta = choice.get("delta") or {}

            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                if self.route_reasoning:
                    chunks.append(ReasoningChunk(text=reasoning))
                else:
                    logger.debug("Dropping reasoning delta for a model without reasoning support")

            content = delta.get("content")
            if isinstance(content, str) and content:
                chunks.extend(self._route_content(content))

            for tool_delta in delta.get("tool_calls") or ():
                chunks.extend(self._decode_tool_delta(tool_delta))

            finish_reason = choice.get("finish_reason")
            if finish_reason:
                self.finish_reason = finish_reason
                chunks.extend(self._flush_content())
                chunks.extend(self._end_open_tool_calls())

        usage = event.get("usage")
        if isinstance(usage, dict):
            chunks.append(
                UsageChunk(
                    prompt_tokens=usage.get("prompt_tokens") or 0,
                    completion_tokens=usage.get("completion_tokens") or 0,
                    total_tokens=usage.get("total_tokens") or 0,
                )
            )
        return chunks

    def _decode_tool_delta(self, tool_delta: dict[str, Any]) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        index = tool_delta.get("index", 0)
        function = tool_delta.get("function") or {}

        call_id = tool_delta.get("id")
        if call_id:
            if self._index_to_id.get(index) not in (None, call_id):
                # A new call reusing an index means the previous one is done.
                previous = self._index_to_id[index]
                chunks.append(ToolCallEnd(id=previous, tool_call=self._tools.end(previous)))
            if call_id not in self._tools.open_ids:
                name = function.get("name") or ""
                self._tools.start(call_id, name)
                chunks.append(ToolCallStart(id=call_id, name=name))
            self._index_to_id[index] = call_id
        elif function.get("name") and index in self._index_to_id:
            self._tools.start(self._index_to_id[index], function["name"])

        fragment = function.get("arguments")
        if isinstance(fragment, str) and fragment:
            open_id = self._index_to_id.get(index)
            if open_id is None or open_id not in self._tools.open_ids:
                raise ProtocolViolation(f"Arguments for tool call index {index} arrived before it started")
            self._tools.append(open_id, fragment)
            chunks.append(ToolCallArguments(id=open_id, arguments=fragment))
        return chunks

    def _end_open_tool_calls(self) -> list[StreamChunk]:
        self._index_to_id.clear()
        return [ToolCallEnd(id=call.id, tool_call=call) for call in self._tools.end_all()]

    def _route_content(self, text: str) -> list[StreamChunk]:
        if self._think is None:
            return [self._content(text)]
        return self._split_parts(self._think.feed(text))

    def _flush_content(self) -> list[StreamChunk]:
        if self._think is None:
            return []
        return self._split_parts(self._think.flush())

    def _split_parts(self, parts: list[tuple[bool, str]]) -> list[StreamChunk]:
        return [ReasoningChunk(text=part) if thinking else self._content(part) for thinking, part in parts]

    def _content(self, text: str) -> ContentChunk:
        chunk = ContentChunk(text=text, is_first=not self._content_started)
        self._content_started = True
        return chunk

    def _malformed(self, data: str) -> list[StreamChunk]:
        self.malformed_events += 1
        logger.warning("Skipping malformed stream event (%d so far): %.200s", self.malformed_events, data)
        if self.malformed_events > self.max_malformed_events:
            return self._terminate(
                [],
                ErrorChunk(
                    message=f"Stream corrupted: {self.malformed_events} malformed events",
                    code="malformed_stream",
                    retryable=False,
                ),
            )
        return []

    def _terminate(self, chunks: list[StreamChunk], terminal: StreamChunk) -> list[StreamChunk]:
        self.finished = True
        chunks.append(terminal)
        return chunks


def _check_shape(event: dict[str, Any]) -> None:
    """Raise ``ValueError`` unless every field the decoder reads has a usable type.

    Runs before any state changes so a rejected event leaves no partial effects.
    """
    choices = event.get("choices") or []
    if not isinstance(choices, list):
        raise ValueError("choices must be a list")
    if choices:
        choice = choices[0]
        if not isinstance(choice, dict):
            raise ValueError("choice must be an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("delta must be an object")
        if not _optional(choice.get("finish_reason"), str):
            raise ValueError("finish_reason must be a string")
        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise ValueError("tool_calls must be a list")
        for tool_delta in tool_calls:
            if not isinstance(tool_delta, dict):
                raise ValueError("tool call delta must be an object")
            function = tool_delta.get("function") or {}
            if not isinstance(function, dict) or not isinstance(tool_delta.get("index", 0), int):
                raise ValueError("malformed tool call delta")
            fields = (tool_delta.get("id"), function.get("name"), function.get("arguments"))
            if not all(_optional(value, str) for value in fields):
                raise ValueError("tool call fields must be strings")

    usage = event.get("usage")
    if isinstance(usage, dict):
        counts = (usage.get(key) for key in ("prompt_tokens", "completion_tokens", "total_tokens"))
        if not all(_optional(count, int) for count in counts):
            raise ValueError("usage counts must be integers")


def _optional(value: Any, kind: type) -> bool:
    return value is None or isinstance(value, kind)


def chunks_from_response(response: CompletionResponse) -> list[StreamChunk]:
    """Express a non-streaming response as the chunk sequence a stream would produce."""
    chunks: list[StreamChunk] = []
    if response.model:
        chunks.append(ModelInfo(model=response.model))
    message = response.message
    if message is not None:
        if message.reasoning:
            chunks.append(ReasoningChunk(text=message.reasoning))
        if message.content:
            chunks.append(ContentChunk(text=message.content, is_first=True))
        for call in message.tool_calls or ():
            chunks.append(ToolCallStart(id=call.id, name=call.function.name))
            if call.function.arguments:
                chunks.append(ToolCallArguments(id=call.id, arguments=call.function.arguments))
            chunks.append(ToolCallEnd(id=call.id, tool_call=call))
    if response.usage is not None:
        chunks.append(UsageChunk(**response.usage.model_dump()))
    chunks.append(DoneChunk())
    return chunks
