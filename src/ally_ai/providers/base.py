"""Provider configuration models and the abstract transport interface."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field

from ally_ai.errors import CapabilityUnsupported, MissingApiKey, parse_retry_after
from ally_ai.types import CompletionRequest, CompletionResponse, StreamChunk, UsageInfo


class RateLimitConfig(BaseModel):
    """Client-side rate limit and retry settings for a provider."""

    requests_per_minute: int = 60
    tokens_per_minute: int = 100_000
    retry_after_ms: int = 1000
    # Upper bound on attempts per request, the first one included.
    max_retries: int = 3
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30_000


class AiProvider(BaseModel):
    """A remote AI service endpoint. Read-only while a request is running."""

    id: str
    name: str
    base_url: str
    api_endpoint: str = "/chat/completions"
    models_endpoint: str | None = "/models"
    requires_api_key: bool = False
    api_key: str | None = Field(default=None, repr=False)
    is_enabled: bool = True
    supports_streaming: bool = True
    supports_tool_calling: bool = True
    supports_vision: bool = False
    supports_dynamic_models: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    @property
    def completion_url(self) -> str:
        return self.base_url.rstrip("/") + self.api_endpoint

    @property
    def models_url(self) -> str | None:
        if self.models_endpoint is None:
            return None
        if self.models_endpoint.startswith(("http://", "https://")):
            return self.models_endpoint
        return self.base_url.rstrip("/") + self.models_endpoint

    def ensure_credentials(self) -> None:
        if self.requires_api_key and not self.api_key:
            raise MissingApiKey(self.id)


class ModelCategory(str, Enum):
    CHAT = "chat"
    REASONING = "reasoning"
    CODING = "coding"
    VISION = "vision"
    IMAGE_GENERATION = "image_generation"
    EMBEDDING = "embedding"
    AUDIO = "audio"


class ModelPricing(BaseModel):
    input_per_million: float = 0.0
    output_per_million: float = 0.0
    currency: str = "USD"


class ModelParameters(BaseModel):
    """Default sampling parameters applied when the caller does not override them."""

    temperature: float = 0.7
    top_p: float = 1.0
    top_k: int | None = None
    max_tokens: int | None = None
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    repetition_penalty: float | None = None
    stop_sequences: list[str] = Field(default_factory=list)


class AiModel(BaseModel):
    """A selectable model hosted by exactly one provider."""

    id: str
    provider_id: str
    model_id: str
    display_name: str
    alias: str | None = None
    description: str | None = None
    context_length: int = 4096
    max_output_tokens: int | None = None
    is_enabled: bool = True
    is_default: bool = False
    supports_streaming: bool = True
    supports_tool_calling: bool = False
    supports_vision: bool = False
    supports_reasoning: bool = False
    is_thinking_model: bool = False
    category: ModelCategory = ModelCategory.CHAT
    pricing: ModelPricing | None = None
    parameters: ModelParameters = Field(default_factory=ModelParameters)

    @property
    def display_name_or_alias(self) -> str:
        return self.alias or self.display_name

    @property
    def routes_reasoning(self) -> bool:
        """Whether reasoning deltas are surfaced as a separate channel."""
        return self.supports_reasoning or self.is_thinking_model

    def estimate_cost(self, usage: UsageInfo) -> float | None:
        if self.pricing is None:
            return None
        return (
            usage.prompt_tokens * self.pricing.input_per_million
            + usage.completion_tokens * self.pricing.output_per_million
        ) / 1_000_000


@dataclass(frozen=True)
class ModelCapabilities:
    """Feature support for a model as served by its provider."""

    tools: bool
    streaming: bool
    thinking: bool
    vision: bool

    @classmethod
    def for_model(cls, model: AiModel, provider: AiProvider | None = None) -> "ModelCapabilities":
        # A model can never do more than its provider allows.
        return cls(
            tools=model.supports_tool_calling and (provider is None or provider.supports_tool_calling),
            streaming=model.supports_streaming and (provider is None or provider.supports_streaming),
            thinking=model.routes_reasoning,
            vision=model.supports_vision and (provider is None or provider.supports_vision),
        )


@dataclass(frozen=True)
class RateLimitStatus:
    """Rate limit state last reported by the server."""

    is_limited: bool = False
    remaining_requests: int | None = None
    remaining_tokens: int | None = None
    reset_at: float | None = None
    retry_after: float | None = None

    def can_make_request(self, now: float | None = None) -> bool:
        if not self.is_limited:
            return True
        now = time.time() if now is None else now
        return self.reset_at is not None and now >= self.reset_at

    @classmethod
    def from_headers(cls, status_code: int, headers: Mapping[str, str]) -> "RateLimitStatus":
        remaining_requests = _int_or_none(headers.get("x-ratelimit-remaining-requests"))
        remaining_tokens = _int_or_none(headers.get("x-ratelimit-remaining-tokens"))
        retry_after = parse_retry_after(headers.get("retry-after"))
        is_limited = (
            status_code == 429
            or (remaining_requests is not None and remaining_requests <= 0)
            or (remaining_tokens is not None and remaining_tokens <= 0)
        )
        return cls(
            is_limited=is_limited,
            remaining_requests=remaining_requests,
            remaining_tokens=remaining_tokens,
            reset_at=time.time() + retry_after if retry_after is not None else None,
            retry_after=retry_after,
        )


def _int_or_none(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class BaseProvider(ABC):
    """Abstract base class for provider transports."""

    name: str
    config: AiProvider
    # Replaced after every response by transports that read rate-limit headers.
    rate_limit_status: RateLimitStatus = RateLimitStatus()

    def capabilities(self, model: AiModel) -> ModelCapabilities:
        """Return capability flags for the given model on this provider."""
        return ModelCapabilities.for_model(model, self.config)

    @abstractmethod
    async def complete(self, req: CompletionRequest) -> CompletionResponse:
        """Execute a non-streaming completion request."""
        raise NotImplementedError

    @abstractmethod
    def stream(self, req: CompletionRequest, model: AiModel | None = None) -> AsyncIterator[StreamChunk]:
        """Yield stream chunks for the request, ending with Done or Error."""
        raise NotImplementedError

    async def fetch_models(self) -> list[AiModel]:
        """Discover models served by the provider."""
        return []

    async def is_available(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


def ensure_capabilities(req: CompletionRequest, caps: ModelCapabilities, model_id: str | None = None) -> None:
    """Fail fast if the request asks for unsupported features."""

    if req.tools and not caps.tools:
        raise CapabilityUnsupported("tool_calling", model_id)

    if req.stream and not caps.streaming:
        raise CapabilityUnsupported("streaming", model_id)

    if not caps.vision and any(m.images for m in req.messages):
        raise CapabilityUnsupported("vision", model_id)
