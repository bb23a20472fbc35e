"""Translate a conversation turn into a CompletionRequest for a given model."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ally_ai.errors import CapabilityUnsupported, ContextOverflow
from ally_ai.providers.base import AiModel, AiProvider, ModelCapabilities, ensure_capabilities
from ally_ai.types import ChatMessage, CompletionOptions, CompletionRequest

logger = logging.getLogger(__name__)

# Role, separators and priming tokens added by chat templates.
MESSAGE_OVERHEAD_TOKENS = 4
IMAGE_TOKENS = 85


def estimate_tokens(message: ChatMessage) -> int:
    """Rough token count for a message (~4 characters per token)."""
    chars = len(message.content)
    if message.name:
        chars += len(message.name)
    for call in message.tool_calls or ():
        chars += len(call.function.name) + len(call.function.arguments)
    return chars // 4 + MESSAGE_OVERHEAD_TOKENS + IMAGE_TOKENS * len(message.images or ())


def estimate_request_tokens(req: CompletionRequest) -> int:
    return sum(estimate_tokens(m) for m in req.messages) + (req.max_tokens or 0)


def build_request(
    model: AiModel,
    history: Sequence[ChatMessage],
    options: CompletionOptions | None = None,
    *,
    provider: AiProvider | None = None,
) -> CompletionRequest:
    """Build the request for ``model``, fitting ``history`` into its context window.

    Sampling parameters the caller leaves unset fall back to the model's
    defaults. Raises ``CapabilityUnsupported`` when tools, streaming or images
    are requested from a model that cannot serve them, and ``ContextOverflow``
    when the system prompt plus the latest user message cannot fit.
    """
    options = options or CompletionOptions()
    caps = ModelCapabilities.for_model(model, provider)
    if options.tools and not caps.tools:
        raise CapabilityUnsupported("tool_calling", model.id)

    params = model.parameters
    max_tokens = options.max_tokens or params.max_tokens or model.max_output_tokens
    reserved = max_tokens if max_tokens and max_tokens < model.context_length else 0
    messages = fit_history(history, model.context_length - reserved)

    req = CompletionRequest(
        model=model.model_id,
        messages=messages,
        temperature=_pick(options.temperature, params.temperature),
        top_p=_pick(options.top_p, params.top_p),
        max_tokens=max_tokens,
        presence_penalty=_pick(options.presence_penalty, params.presence_penalty),
        frequency_penalty=_pick(options.frequency_penalty, params.frequency_penalty),
        stop=options.stop if options.stop is not None else (params.stop_sequences or None),
        stream=options.stream,
        tools=options.tools or None,
        tool_choice=options.tool_choice if options.tools else None,
        response_format=options.response_format,
        user=options.user,
    )
    ensure_capabilities(req, caps, model.id)
    return req


def fit_history(history: Sequence[ChatMessage], budget: int) -> list[ChatMessage]:
    """Drop the oldest non-system messages until the conversation fits ``budget`` tokens.

    System messages and the most recent user message are never dropped. Tool
    results whose originating assistant turn was dropped are dropped with it.
    """
    messages = list(history)
    last_user = max((i for i, m in enumerate(messages) if m.role == "user"), default=None)

    pinned = {i for i, m in enumerate(messages) if m.role == "system"}
    if last_user is not None:
        pinned.add(last_user)
    required = sum(estimate_tokens(messages[i]) for i in pinned)
    if required > budget:
        raise ContextOverflow(required, budget)

    total = sum(estimate_tokens(m) for m in messages)
    dropped: set[int] = set()
    droppable = (i for i in range(len(messages)) if i not in pinned)
    while total > budget:
        index = next(droppable)
        dropped.add(index)
        total -= estimate_tokens(messages[index])

    if dropped:
        # A tool reply is only valid directly after the assistant turn that requested it.
        for i, message in enumerate(messages):
            if message.role != "tool" or i in dropped:
                continue
            owner = next((j for j in range(i - 1, -1, -1) if messages[j].role != "tool"), None)
            if owner is None or owner in dropped:
                dropped.add(i)
        logger.info("Dropped %d old messages to fit a %d token context", len(dropped), budget)

    return [m for i, m in enumerate(messages) if i not in dropped]


def _pick(override: float | None, default: float) -> float:
    return override if override is not None else default
