"""Async client orchestrating provider interactions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from typing import Any

from ally_ai.aggregator import AggregateResult, ChunkCallback, ResponseAggregator
from ally_ai.decoder import chunks_from_response
from ally_ai.errors import ApiError, UnknownModel
from ally_ai.providers import create_provider
from ally_ai.providers.base import AiModel, AiProvider, BaseProvider, ModelCapabilities
from ally_ai.registry import ProviderRegistry
from ally_ai.request_builder import build_request, estimate_request_tokens
from ally_ai.retry import RateLimiter, RetryPolicy, Sleep
from ally_ai.types import ChatMessage, CompletionOptions, CompletionRequest, CompletionResponse, StreamChunk

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AiProvider], BaseProvider]


class AiClient:
    """High-level coordinator for chatting with configured providers.

    The target model is an explicit argument of every call; when omitted the
    registry's default model is used. Nothing about the "current" model is
    stored on the client.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        providers: Mapping[str, BaseProvider] | None = None,
        provider_factory: ProviderFactory | None = None,
        provider_options: Mapping[str, Any] | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self._providers: dict[str, BaseProvider] = dict(providers or {})
        # Caller supplied transports are used as given, whatever the registry says.
        self._pinned = set(self._providers)
        self._retired: list[BaseProvider] = []
        self._factory = provider_factory or (lambda config: create_provider(config, **dict(provider_options or {})))
        self._policies: dict[str, RetryPolicy] = {}
        self._sleep = sleep
        self._clock = clock

    def get_provider(self, provider_id: str) -> BaseProvider:
        """Return the transport for a provider.

        Transports are created on first use and recreated once the registry
        holds a different configuration for the provider (a new API key, say).
        """
        config = self.registry.get_provider(provider_id)
        provider = self._providers.get(provider_id)
        if provider is not None and (provider_id in self._pinned or provider.config == config):
            return provider
        if provider is not None:
            logger.info("Configuration of provider %s changed; recreating its transport", provider_id)
            self._retired.append(provider)
        provider = self._factory(config)
        self._providers[provider_id] = provider
        return provider

    def policy(self, provider_id: str) -> RetryPolicy:
        config = self.registry.get_provider(provider_id).rate_limit
        policy = self._policies.get(provider_id)
        if policy is None or policy.config != config:
            limiter = RateLimiter(config, clock=self._clock, sleep=self._sleep)
            policy = RetryPolicy(config, limiter=limiter, sleep=self._sleep)
            self._policies[provider_id] = policy
        return policy

    def capabilities(self, model_id: str) -> ModelCapabilities:
        model = self.registry.resolve_model(model_id)
        return ModelCapabilities.for_model(model, self.registry.get_provider(model.provider_id))

    def resolve(self, model_id: str | None = None) -> AiModel:
        if model_id is None:
            model = self.registry.get_default_model()
            if model is None:
                raise UnknownModel(None)
            return model
        return self.registry.resolve_model(model_id)

    def build(
        self,
        history: Sequence[ChatMessage],
        *,
        model_id: str | None = None,
        options: CompletionOptions | None = None,
    ) -> tuple[AiModel, CompletionRequest]:
        """Resolve the model and build its request. Raises before any network call."""
        model = self.resolve(model_id)
        provider = self.registry.get_provider(model.provider_id)
        options = options or CompletionOptions()
        if options.stream and not ModelCapabilities.for_model(model, provider).streaming:
            logger.debug("Model %s cannot stream; using a single response", model.id)
            options = options.model_copy(update={"stream": False})
        return model, build_request(model, history, options, provider=provider)

    def stream(
        self,
        history: Sequence[ChatMessage],
        *,
        model_id: str | None = None,
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream chunks for a conversation turn, retrying transient failures.

        Configuration errors are raised here, before the iterator is returned.
        """
        model, req = self.build(history, model_id=model_id, options=options)
        self.registry.get_provider(model.provider_id).ensure_credentials()
        provider = self.get_provider(model.provider_id)
        policy = self.policy(model.provider_id)

        def request_fn() -> AsyncIterator[StreamChunk]:
            if req.stream:
                return provider.stream(req, model)
            return _single_response(provider, req)

        return policy.execute(
            request_fn,
            estimated_tokens=estimate_request_tokens(req),
            server_status=lambda: provider.rate_limit_status,
        )

    async def chat(
        self,
        history: Sequence[ChatMessage],
        *,
        model_id: str | None = None,
        options: CompletionOptions | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> AggregateResult:
        """Run a turn to completion, forwarding chunks to ``on_chunk`` as they arrive."""
        chunks = self.stream(history, model_id=model_id, options=options)
        result = await ResponseAggregator(on_chunk).consume(chunks)
        if result.error is not None:
            logger.error("Chat turn failed (%s): %s", result.status.value, result.error.message)
        return result

    async def complete(
        self,
        history: Sequence[ChatMessage],
        *,
        model_id: str | None = None,
        options: CompletionOptions | None = None,
    ) -> CompletionResponse:
        """Non-streaming completion with retries. Raises ``ApiError`` on failure."""
        options = (options or CompletionOptions()).model_copy(update={"stream": False})
        model, req = self.build(history, model_id=model_id, options=options)
        provider = self.get_provider(model.provider_id)
        return await self.policy(model.provider_id).call(
            lambda: provider.complete(req),
            estimated_tokens=estimate_request_tokens(req),
            server_status=lambda: provider.rate_limit_status,
        )

    async def refresh_models(self, provider_id: str) -> list[AiModel]:
        """Discover a provider's models and merge them into the registry."""
        models = await self.get_provider(provider_id).fetch_models()
        if models:
            self.registry.upsert_models(provider_id, models)
        return models

    async def aclose(self) -> None:
        retired, self._retired = self._retired, []
        for provider in [*retired, *self._providers.values()]:
            await provider.aclose()


async def _single_response(provider: BaseProvider, req: CompletionRequest) -> AsyncIterator[StreamChunk]:
    try:
        response = await provider.complete(req)
    except ApiError as exc:
        yield exc.to_chunk()
        return
    for chunk in chunks_from_response(response):
        yield chunk
