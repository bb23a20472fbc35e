"""Retry and rate-limit policy wrapped around provider transports."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from ally_ai.errors import ApiError, TransportFailure
from ally_ai.providers.base import RateLimitConfig, RateLimitStatus
from ally_ai.types import DoneChunk, ErrorChunk, ResetChunk, StreamChunk, UsageChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(config: RateLimitConfig, retry_number: int, server_retry_after: float | None = None) -> float:
    """Seconds to wait before retry ``retry_number`` (1-based).

    A server supplied ``Retry-After`` wins over the computed exponential delay.
    """
    if server_retry_after is not None:
        return server_retry_after
    delay_ms = config.retry_after_ms * config.backoff_multiplier ** (retry_number - 1)
    return min(delay_ms, config.max_delay_ms) / 1000


class RateLimiter:
    """Rolling one-minute request/token window for a single provider.

    Best effort: it delays locally instead of sending requests that are
    expected to be rejected, but it cannot see other clients of the same key.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        window_s: float = 60.0,
    ) -> None:
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._window_s = window_s
        self._requests: deque[float] = deque()
        self._tokens: deque[tuple[float, int]] = deque()
        self._blocked_until = 0.0
        self._observed: RateLimitStatus | None = None
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: int = 0) -> float:
        """Wait until a request of ``tokens`` fits the window, then record it.

        Returns the number of seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                delay = self._admission_delay(now, tokens)
                if delay <= 0:
                    self._requests.append(now)
                    if tokens:
                        self._tokens.append((now, tokens))
                    return waited
                logger.info("Rate limit window full, delaying request %.2fs", delay)
                await self._sleep(delay)
                waited += delay

    def record_usage(self, tokens: int, estimated: int = 0) -> None:
        """Correct the token window with actual usage reported by the server."""
        extra = tokens - estimated
        if extra > 0:
            self._tokens.append((self._clock(), extra))

    def observe(self, status: RateLimitStatus | None) -> None:
        """Hold back admissions while the server reports the key as limited.

        The hold lasts for the server's ``Retry-After``, or a full window when
        the server only reports exhausted remaining counts. A bare 429 is left
        to the retry backoff.
        """
        if status is None or status is self._observed:
            return
        self._observed = status
        if status.can_make_request():
            return
        if status.retry_after is not None:
            hold = status.retry_after
        elif _exhausted(status.remaining_requests) or _exhausted(status.remaining_tokens):
            hold = self._window_s
        else:
            return
        self._blocked_until = max(self._blocked_until, self._clock() + hold)
        logger.info("Server reports rate limiting, holding requests for %.2fs", hold)

    def _prune(self, now: float) -> None:
        horizon = now - self._window_s
        while self._requests and self._requests[0] <= horizon:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] <= horizon:
            self._tokens.popleft()

    def _admission_delay(self, now: float, tokens: int) -> float:
        delay = self._blocked_until - now
        if len(self._requests) >= self._config.requests_per_minute:
            delay = max(delay, self._requests[0] + self._window_s - now)

        budget = self._config.tokens_per_minute
        used = sum(count for _, count in self._tokens)
        if tokens and self._tokens and used + tokens > budget:
            # Wait until enough old entries expire; an oversized request only needs an empty window.
            for stamp, count in self._tokens:
                used -= count
                if used + tokens <= budget:
                    break
            delay = max(delay, stamp + self._window_s - now)
        return delay


def _exhausted(remaining: int | None) -> bool:
    return remaining is not None and remaining <= 0


class RetryPolicy:
    """Re-issues failed requests with bounded exponential backoff.

    Streaming has no resume: a retry re-sends the whole request, and a
    ``ResetChunk`` tells consumers to discard what the failed attempt produced.
    ``max_retries`` bounds the attempts made in total, first one included.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        limiter: RateLimiter | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.limiter = limiter
        self._sleep = sleep

    async def execute(
        self,
        request_fn: Callable[[], AsyncIterator[StreamChunk]],
        *,
        estimated_tokens: int = 0,
        server_status: Callable[[], RateLimitStatus | None] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield chunks from successive attempts until Done or a terminal Error.

        ``server_status`` returns the rate-limit state the transport last saw;
        it is handed to the limiter after every attempt.
        """
        attempt = 1
        while True:
            if self.limiter is not None:
                await self.limiter.acquire(estimated_tokens)

            failure: ErrorChunk | None = None
            try:
                stream = request_fn()
                try:
                    async for chunk in stream:
                        if isinstance(chunk, ErrorChunk):
                            failure = chunk
                            break
                        if isinstance(chunk, UsageChunk) and self.limiter is not None:
                            self.limiter.record_usage(chunk.total_tokens, estimated_tokens)
                        yield chunk
                        if isinstance(chunk, DoneChunk):
                            return
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                    self._observe(server_status)
            except TransportFailure as exc:
                failure = ErrorChunk(message=str(exc), code="connection_error", retryable=True)

            if failure is None:
                failure = ErrorChunk(
                    message="Stream ended without a terminal event",
                    code="connection_closed",
                    retryable=True,
                )

            if not failure.retryable or attempt >= self.config.max_retries:
                if failure.retryable:
                    logger.error("Giving up after %d attempts: %s", attempt, failure.message)
                yield failure
                return

            delay = backoff_delay(self.config, attempt, failure.retry_after)
            logger.warning(
                "Attempt %d failed (%s), retrying in %.2fs",
                attempt,
                failure.code or failure.message,
                delay,
            )
            attempt += 1
            yield ResetChunk(attempt=attempt, reason=failure.message, delay_s=delay)
            await self._sleep(delay)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        estimated_tokens: int = 0,
        server_status: Callable[[], RateLimitStatus | None] | None = None,
    ) -> T:
        """Run a non-streaming request with the same retry rules."""
        attempt = 1
        while True:
            if self.limiter is not None:
                await self.limiter.acquire(estimated_tokens)
            try:
                result = await fn()
            except (ApiError, TransportFailure) as exc:
                self._observe(server_status)
                retryable = exc.is_retryable() if isinstance(exc, ApiError) else exc.retryable
                if not retryable or attempt >= self.config.max_retries:
                    raise
                delay = backoff_delay(self.config, attempt, getattr(exc, "retry_after", None))
                logger.warning("Attempt %d failed (%s), retrying in %.2fs", attempt, exc, delay)
                attempt += 1
                await self._sleep(delay)
            else:
                self._observe(server_status)
                return result

    def _observe(self, server_status: Callable[[], RateLimitStatus | None] | None) -> None:
        if self.limiter is not None and server_status is not None:
            self.limiter.observe(server_status())
