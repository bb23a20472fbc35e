"""Transport for OpenAI-compatible chat completion services."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ally_ai.decoder import DEFAULT_MAX_MALFORMED_EVENTS, StreamDecoder
from ally_ai.errors import ApiError, TransportFailure
from ally_ai.providers.base import AiModel, AiProvider, BaseProvider, RateLimitStatus
from ally_ai.types import (
    ChatMessage,
    Choice,
    CompletionRequest,
    CompletionResponse,
    ErrorChunk,
    FunctionCall,
    StreamChunk,
    ToolCall,
    UsageInfo,
)


class OpenAIProvider(BaseProvider):
    """Async client for any service speaking the Chat Completions wire format."""

    name = "openai"
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        config: AiProvider,
        *,
        timeout_s: float = 60.0,
        idle_timeout_s: float = 30.0,
        total_timeout_s: float = 300.0,
        max_malformed_events: int = DEFAULT_MAX_MALFORMED_EVENTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_s, read=idle_timeout_s),
            transport=transport,
        )
        self._idle_timeout_s = idle_timeout_s
        self._total_timeout_s = total_timeout_s
        self._max_malformed_events = max_malformed_events
        self.rate_limit_status = RateLimitStatus()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def complete(self, req: CompletionRequest) -> CompletionResponse:
        """Call the completion endpoint without streaming and normalize the result."""
        self.config.ensure_credentials()
        payload = self._build_payload(req.model_copy(update={"stream": False}))
        try:
            response = await self._client.post(
                self.config.api_endpoint,
                headers=self._headers(streaming=False),
                json=payload,
                timeout=httpx.Timeout(self._total_timeout_s),
            )
        except httpx.TransportError as exc:
            raise TransportFailure(f"{self.config.id}: {exc!r}") from exc

        self._update_rate_limit(response)
        if response.status_code >= 400:
            raise ApiError.from_response(response.status_code, response.content, response.headers)
        try:
            data = response.json()
        except ValueError as exc:
            raise ApiError("Response body is not valid JSON", status_code=response.status_code) from exc
        return self._parse_completion(data)

    def stream(self, req: CompletionRequest, model: AiModel | None = None) -> AsyncIterator[StreamChunk]:
        """Return an async iterator of decoded chunks.

        The iterator always ends with exactly one Done or Error chunk. Closing
        it early (or cancelling the consuming task) closes the connection.
        """
        self.config.ensure_credentials()
        decoder = StreamDecoder(
            route_reasoning=model.routes_reasoning if model else False,
            parse_think_tags=model.is_thinking_model if model else False,
            max_malformed_events=self._max_malformed_events,
        )

        async def _gen() -> AsyncIterator[StreamChunk]:
            payload = self._build_payload(req.model_copy(update={"stream": True}))
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._total_timeout_s

            try:
                async with self._client.stream(
                    "POST",
                    self.config.api_endpoint,
                    headers=self._headers(streaming=True),
                    json=payload,
                ) as response:
                    self._update_rate_limit(response)
                    if response.status_code >= 400:
                        body = await response.aread()
                        error = ApiError.from_response(response.status_code, body, response.headers)
                        self._logger.warning("%s returned %s: %s", self.config.id, error.status_code, error.message)
                        yield error.to_chunk()
                        return

                    lines = response.aiter_lines()
                    while True:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            yield _total_timeout_chunk(self._total_timeout_s)
                            return
                        try:
                            async with asyncio.timeout(min(self._idle_timeout_s, remaining)):
                                line = await anext(lines)
                        except StopAsyncIteration:
                            break
                        except TimeoutError:
                            if loop.time() >= deadline:
                                yield _total_timeout_chunk(self._total_timeout_s)
                            else:
                                yield ErrorChunk(
                                    message=f"No data received for {self._idle_timeout_s:g}s",
                                    code="idle_timeout",
                                    retryable=True,
                                )
                            return

                        for chunk in decoder.feed_line(line):
                            yield chunk
                        if decoder.finished:
                            return

                    for chunk in decoder.finish():
                        yield chunk
            except httpx.TimeoutException as exc:
                yield ErrorChunk(message=f"Request timed out: {exc!r}", code="timeout", retryable=True)
            except httpx.TransportError as exc:
                self._logger.warning("%s connection failed: %r", self.config.id, exc)
                yield ErrorChunk(message=f"Connection failed: {exc!r}", code="connection_error", retryable=True)

        return _gen()

    async def fetch_models(self) -> list[AiModel]:
        """List models from the provider's models endpoint."""
        url = self.config.models_url
        if not self.config.supports_dynamic_models or url is None:
            return []
        try:
            response = await self._client.get(url, headers=self._headers(streaming=False))
        except httpx.TransportError as exc:
            raise TransportFailure(f"{self.config.id}: {exc!r}") from exc
        if response.status_code >= 400:
            raise ApiError.from_response(response.status_code, response.content, response.headers)
        return self._parse_models(response.json())

    async def is_available(self) -> bool:
        """Query the models endpoint; any answer below 500 counts as reachable."""
        url = self.config.models_url or self.config.api_endpoint
        try:
            response = await self._client.get(url, headers=self._headers(streaming=False))
        except httpx.HTTPError as exc:
            self._logger.debug("%s is unreachable: %r", self.config.id, exc)
            return False
        return response.status_code < 500

    def _headers(self, *, streaming: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if streaming else "application/json",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.headers)
        return headers

    def _update_rate_limit(self, response: httpx.Response) -> None:
        self.rate_limit_status = RateLimitStatus.from_headers(response.status_code, response.headers)

    def _build_payload(self, req: CompletionRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": req.model,
            "messages": [self._serialize_message(m) for m in req.messages],
        }

        if req.stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}

        optional = {
            "temperature": req.temperature,
            "top_p": req.top_p,
            "max_tokens": req.max_tokens,
            "presence_penalty": req.presence_penalty,
            "frequency_penalty": req.frequency_penalty,
            "stop": req.stop,
            "tool_choice": req.tool_choice,
            "user": req.user,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})

        if req.tools:
            payload["tools"] = [tool.model_dump(by_alias=True, exclude_none=True) for tool in req.tools]
        if req.response_format is not None:
            payload["response_format"] = req.response_format.model_dump()
        return payload

    @staticmethod
    def _serialize_message(message: ChatMessage) -> dict[str, Any]:
        data: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.images:
            data["content"] = [{"type": "text", "text": message.content}] + [
                {"type": "image_url", "image_url": {"url": url}} for url in message.images
            ]
        if message.name:
            data["name"] = message.name
        if message.tool_call_id:
            data["tool_call_id"] = message.tool_call_id
        if message.tool_calls:
            data["tool_calls"] = [call.model_dump() for call in message.tool_calls]
        return data

    @staticmethod
    def _parse_completion(data: dict[str, Any]) -> CompletionResponse:
        choices = []
        for raw in data.get("choices") or []:
            message = raw.get("message") or {}
            tool_calls = [
                ToolCall(
                    id=tc["id"],
                    type=tc.get("type") or "function",
                    function=FunctionCall(
                        name=tc["function"]["name"],
                        arguments=tc["function"].get("arguments") or "",
                    ),
                )
                for tc in message.get("tool_calls") or []
            ]
            choices.append(
                Choice(
                    index=raw.get("index") or 0,
                    message=ChatMessage(
                        role=message.get("role") or "assistant",
                        content=message.get("content") or "",
                        tool_calls=tool_calls or None,
                        reasoning=message.get("reasoning_content") or message.get("reasoning"),
                    ),
                    finish_reason=raw.get("finish_reason"),
                )
            )

        usage = data.get("usage")
        extra = {"created": int(data["created"])} if data.get("created") else {}
        return CompletionResponse(
            id=data.get("id") or "",
            model=data.get("model") or "",
            choices=choices,
            usage=UsageInfo(**{k: usage.get(k) or 0 for k in UsageInfo.model_fields}) if usage else None,
            **extra,
        )

    def _parse_models(self, data: Any) -> list[AiModel]:
        entries = data.get("data", []) if isinstance(data, dict) else data
        models = []
        for entry in entries or []:
            model_id = entry.get("id") if isinstance(entry, dict) else None
            if not model_id:
                continue
            models.append(
                AiModel(
                    id=f"{self.config.id}:{model_id}",
                    provider_id=self.config.id,
                    model_id=model_id,
                    display_name=model_id.split("/")[-1],
                    supports_streaming=self.config.supports_streaming,
                )
            )
        return models


def _total_timeout_chunk(total_timeout_s: float) -> ErrorChunk:
    return ErrorChunk(
        message=f"Request exceeded {total_timeout_s:g}s",
        code="total_timeout",
        retryable=False,
    )
