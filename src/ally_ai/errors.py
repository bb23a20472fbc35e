"""Package specific exception hierarchy."""

from __future__ import annotations

import json
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from ally_ai.types import ErrorChunk


class AllyAIError(Exception):
    """Base exception for ally_ai package."""


class CatalogError(AllyAIError):
    """Raised when provider/model configuration is inconsistent."""


class UnknownModel(AllyAIError):
    """Raised when a model id is absent or its provider is disabled."""

    def __init__(self, model_id: str | None) -> None:
        super().__init__(f"Model '{model_id}' is not available.")
        self.model_id = model_id


class UnknownProvider(AllyAIError):
    """Raised when a provider has not been configured."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider '{provider_id}' is not available.")
        self.provider_id = provider_id


class CapabilityUnsupported(AllyAIError):
    """Raised when a requested feature is unsupported by the target model."""

    def __init__(self, feature: str, model_id: str | None = None) -> None:
        suffix = f" by model '{model_id}'" if model_id else ""
        super().__init__(f"Feature '{feature}' is not supported{suffix}.")
        self.feature = feature
        self.model_id = model_id


class ContextOverflow(AllyAIError):
    """Raised when the messages that must be sent do not fit the context window."""

    def __init__(self, required_tokens: int, available_tokens: int) -> None:
        super().__init__(
            f"Conversation needs ~{required_tokens} tokens but only {available_tokens} are available."
        )
        self.required_tokens = required_tokens
        self.available_tokens = available_tokens


class MissingApiKey(AllyAIError):
    """Raised when a provider requires an API key and none is configured."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider '{provider_id}' requires an API key.")
        self.provider_id = provider_id


class TransportFailure(AllyAIError):
    """Connection refused, reset or timed out. Always retryable."""

    retryable = True


class ProtocolViolation(AllyAIError):
    """Raised when the event stream breaks the tool-call or framing rules."""


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    INVALID_REQUEST = "invalid_request"
    CONTEXT_LENGTH = "context_length"
    CONTENT_FILTER = "content_filter"
    MODEL_NOT_FOUND = "model_not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


_USER_MESSAGES = {
    ErrorCategory.AUTHENTICATION: "Authentication failed. Please check your API key in Settings.",
    ErrorCategory.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorCategory.QUOTA_EXCEEDED: "API quota exceeded. Please check your billing settings with your AI provider.",
    ErrorCategory.CONTEXT_LENGTH: "Message is too long. Try shortening your conversation or starting a new chat.",
    ErrorCategory.CONTENT_FILTER: "Your message was flagged by content filters. Please try rephrasing.",
    ErrorCategory.MODEL_NOT_FOUND: "The selected model is not available. Please choose a different model in Settings.",
    ErrorCategory.SERVER: "The AI service is temporarily unavailable. Please try again in a few moments.",
    ErrorCategory.INVALID_REQUEST: "Invalid request. Please try again or contact support if the issue persists.",
}

_SUGGESTED_ACTIONS = {
    ErrorCategory.AUTHENTICATION: "Go to Settings to update your API key",
    ErrorCategory.QUOTA_EXCEEDED: "Check billing in your AI provider dashboard",
    ErrorCategory.CONTEXT_LENGTH: "Start a new conversation",
    ErrorCategory.MODEL_NOT_FOUND: "Select a different model",
    ErrorCategory.SERVER: "Retry in a few moments",
}


class ApiError(AllyAIError):
    """An error reported by the remote AI service.

    The predicates mirror how OpenAI-compatible services report failures: the
    HTTP status is authoritative, with ``type``/``code`` fields as a fallback
    for errors delivered inside a 200 event stream.
    """

    def __init__(
        self,
        message: str,
        *,
        type: str | None = None,
        code: str | None = None,
        param: str | None = None,
        status_code: int = 500,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(f"{message} (status {status_code})")
        self.message = message
        self.type = type
        self.code = code
        self.param = param
        self.status_code = status_code
        self.retry_after = retry_after

    def is_rate_limit_error(self) -> bool:
        return (
            self.status_code == 429
            or self.type in ("rate_limit_exceeded", "rate_limit_error")
            or self.code == "rate_limit_exceeded"
        )

    def is_auth_error(self) -> bool:
        return (
            self.status_code in (401, 403)
            or self.type == "authentication_error"
            or self.code == "invalid_api_key"
        )

    def is_quota_exceeded(self) -> bool:
        lowered = self.message.lower()
        return (
            self.code in ("insufficient_quota", "billing_hard_limit_reached")
            or "quota" in lowered
            or "billing" in lowered
        )

    def is_context_length_error(self) -> bool:
        lowered = self.message.lower()
        return (
            self.code == "context_length_exceeded"
            or "context length" in lowered
            or "maximum context" in lowered
            or "token limit" in lowered
        )

    def is_content_filter_error(self) -> bool:
        lowered = self.message.lower()
        return (
            self.code == "content_filter"
            or self.type == "content_policy_violation"
            or "content policy" in lowered
        )

    def is_model_not_found_error(self) -> bool:
        lowered = self.message.lower()
        return (
            self.status_code == 404
            or self.code == "model_not_found"
            or "model not found" in lowered
            or "does not exist" in lowered
        )

    def is_invalid_request(self) -> bool:
        return self.status_code == 400 or self.type == "invalid_request_error"

    def is_retryable(self) -> bool:
        """Rate limits and 5xx responses are retryable; auth failures never are."""
        if self.is_auth_error():
            return False
        return self.is_rate_limit_error() or self.status_code >= 500

    @property
    def category(self) -> ErrorCategory:
        if self.is_auth_error():
            return ErrorCategory.AUTHENTICATION
        if self.is_rate_limit_error():
            return ErrorCategory.RATE_LIMIT
        if self.is_quota_exceeded():
            return ErrorCategory.QUOTA_EXCEEDED
        if self.is_context_length_error():
            return ErrorCategory.CONTEXT_LENGTH
        if self.is_content_filter_error():
            return ErrorCategory.CONTENT_FILTER
        if self.is_model_not_found_error():
            return ErrorCategory.MODEL_NOT_FOUND
        if self.is_invalid_request():
            return ErrorCategory.INVALID_REQUEST
        if self.status_code >= 500:
            return ErrorCategory.SERVER
        return ErrorCategory.UNKNOWN

    @property
    def retry_delay_seconds(self) -> int:
        return {
            ErrorCategory.RATE_LIMIT: 10,
            ErrorCategory.SERVER: 5,
        }.get(self.category, 0)

    def user_friendly_message(self) -> str:
        """Return a message suitable for showing in the chat UI."""
        try:
            return _USER_MESSAGES[self.category]
        except KeyError:
            if len(self.message) > 150:
                return self.message[:150] + "..."
            return self.message

    def suggested_action(self) -> str | None:
        if self.category is ErrorCategory.RATE_LIMIT:
            wait = int(self.retry_after) if self.retry_after is not None else self.retry_delay_seconds
            return f"Wait {wait}s before retrying"
        return _SUGGESTED_ACTIONS.get(self.category)

    def to_chunk(self) -> ErrorChunk:
        """Express the error as the terminal chunk of a stream."""
        return ErrorChunk(
            message=self.message,
            code=self.code,
            retryable=self.is_retryable(),
            status_code=self.status_code,
            retry_after=self.retry_after,
        )

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> "ApiError":
        """Build the most specific error for an ``{"error": {...}}`` JSON payload.

        Without ``status_code`` (an error event inside a 200 stream) the status
        is inferred from the error fields.
        """
        error_obj = payload.get("error", payload)
        if isinstance(error_obj, str):
            error_obj = {"message": error_obj}
        if not isinstance(error_obj, Mapping):
            error_obj = {}

        error_type = error_obj.get("type")
        code = error_obj.get("code")
        code = str(code) if code is not None else None
        message = str(error_obj.get("message") or payload.get("detail") or "")
        if status_code is None:
            status_code = _infer_status(message, error_type, code)
        return _select_class(status_code, error_type, code)(
            message or f"Request failed with status {status_code}",
            type=error_type,
            code=code,
            param=error_obj.get("param"),
            status_code=status_code,
            retry_after=retry_after,
        )

    @classmethod
    def from_response(
        cls,
        status_code: int,
        body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> "ApiError":
        """Build the most specific error for a failed HTTP response."""
        retry_after = parse_retry_after((headers or {}).get("retry-after"))
        text = body.decode(errors="replace") if isinstance(body, bytes) else body
        try:
            payload = json.loads(text) if text else {}
        except json.JSONDecodeError:
            payload = {"error": {"message": text.strip()[:500]}} if text.strip() else {}
        if not isinstance(payload, Mapping):
            payload = {}
        return cls.from_payload(payload, status_code=status_code, retry_after=retry_after)


class RateLimited(ApiError):
    """429 or an explicit rate-limit code. Retryable with backoff."""


class AuthFailure(ApiError):
    """401/403. A configuration problem, never retried."""


class ServerError(ApiError):
    """5xx. Retryable."""


class ClientError(ApiError):
    """4xx other than 401/403/429. The request is malformed; never retried."""


def _select_class(status_code: int, error_type: str | None, code: Any) -> type[ApiError]:
    sample = ApiError("", type=error_type, code=code, status_code=status_code)
    if sample.is_auth_error():
        return AuthFailure
    if sample.is_rate_limit_error():
        return RateLimited
    if status_code >= 500:
        return ServerError
    if 400 <= status_code < 500:
        return ClientError
    return ApiError


def _infer_status(message: str, error_type: str | None, code: str | None) -> int:
    """HTTP status equivalent of an error event delivered inside a 200 stream."""
    sample = ApiError(message, type=error_type, code=code, status_code=0)
    if sample.is_auth_error():
        return 401
    if sample.is_rate_limit_error():
        return 429
    if sample.is_model_not_found_error():
        return 404
    if sample.is_quota_exceeded():
        # Quota errors are never retried.
        return 402
    if sample.is_invalid_request() or sample.is_context_length_error() or sample.is_content_filter_error():
        return 400
    return 500


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
