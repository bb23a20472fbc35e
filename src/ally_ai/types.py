"""Provider-agnostic request, response and stream chunk models."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["system", "user", "assistant", "tool"]


class FunctionCall(BaseModel):
    """Function invocation requested by the model.

    ``arguments`` is the raw JSON text produced by the model. It is never parsed
    here; only the tool executor interprets it.
    """

    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class ParameterProperty(BaseModel):
    type: str
    description: str | None = None
    enum: list[str] | None = None
    items: ParameterProperty | None = None
    default: Any = None


class FunctionParameters(BaseModel):
    """JSON-schema-like parameter description for a tool."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = "object"
    properties: dict[str, ParameterProperty] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    additional_properties: bool = Field(default=False, alias="additionalProperties")


class FunctionDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: FunctionParameters = Field(default_factory=FunctionParameters)
    strict: bool = False


class ToolDefinition(BaseModel):
    """Tool declaration sent alongside a request."""

    type: Literal["function"] = "function"
    function: FunctionDefinition

    @property
    def name(self) -> str:
        return self.function.name


class ChatMessage(BaseModel):
    """Single protocol-level chat message. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    name: str | None = None
    reasoning: str | None = None
    images: list[str] | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @model_validator(mode="after")
    def _check_tool_reply(self) -> "ChatMessage":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require tool_call_id")
        return self


class ResponseFormat(BaseModel):
    type: str = "text"


class CompletionOptions(BaseModel):
    """Caller overrides for a single request. ``None`` means use the model default."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stop: list[str] | None = None
    stream: bool = True
    tools: list[ToolDefinition] | None = None
    tool_choice: str | dict[str, Any] | None = None
    response_format: ResponseFormat | None = None
    user: str | None = None


class CompletionRequest(BaseModel):
    """Normalized request shared by all providers."""

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stop: list[str] | None = None
    stream: bool = True
    tools: list[ToolDefinition] | None = None
    tool_choice: str | dict[str, Any] | None = None
    response_format: ResponseFormat | None = None
    user: str | None = None


class UsageInfo(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Choice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class CompletionResponse(BaseModel):
    """Complete response from a non-streaming request."""

    id: str = ""
    model: str = ""
    choices: list[Choice] = Field(default_factory=list)
    usage: UsageInfo | None = None
    created: int = Field(default_factory=lambda: int(time.time()))

    @property
    def message(self) -> ChatMessage | None:
        return self.choices[0].message if self.choices else None


# Stream chunks. Exactly one DoneChunk or ErrorChunk ends a stream.


class _Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)


class ContentChunk(_Chunk):
    type: Literal["content"] = "content"
    text: str
    is_first: bool = False


class ReasoningChunk(_Chunk):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallStart(_Chunk):
    type: Literal["tool_call_start"] = "tool_call_start"
    id: str
    name: str


class ToolCallArguments(_Chunk):
    type: Literal["tool_call_arguments"] = "tool_call_arguments"
    id: str
    arguments: str


class ToolCallEnd(_Chunk):
    type: Literal["tool_call_end"] = "tool_call_end"
    id: str
    # Set by the decoder once the buffered arguments are complete.
    tool_call: ToolCall | None = None


class UsageChunk(_Chunk):
    type: Literal["usage"] = "usage"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_usage_info(self) -> UsageInfo:
        return UsageInfo(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
        )


class ModelInfo(_Chunk):
    type: Literal["model_info"] = "model_info"
    model: str


class ErrorChunk(_Chunk):
    type: Literal["error"] = "error"
    message: str
    code: str | None = None
    retryable: bool = False
    status_code: int | None = None
    # Seconds, as supplied by the server.
    retry_after: float | None = None


class DoneChunk(_Chunk):
    type: Literal["done"] = "done"


class ResetChunk(_Chunk):
    """Emitted between retry attempts: everything received so far is stale."""

    type: Literal["reset"] = "reset"
    attempt: int
    reason: str = ""
    delay_s: float = 0.0


StreamChunk = Annotated[
    Union[
        ContentChunk,
        ReasoningChunk,
        ToolCallStart,
        ToolCallArguments,
        ToolCallEnd,
        UsageChunk,
        ModelInfo,
        ErrorChunk,
        DoneChunk,
        ResetChunk,
    ],
    Field(discriminator="type"),
]


def is_terminal(chunk: BaseModel) -> bool:
    return isinstance(chunk, (DoneChunk, ErrorChunk))
