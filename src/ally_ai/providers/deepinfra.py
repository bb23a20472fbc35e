"""DeepInfra provider: bundled defaults and featured-model discovery."""

from __future__ import annotations

from typing import Any

import httpx

from ally_ai.errors import ApiError, TransportFailure
from ally_ai.providers.base import AiModel, AiProvider, ModelCategory
from ally_ai.providers.openai import OpenAIProvider

PROVIDER_ID = "deepinfra"
BASE_URL = "https://api.deepinfra.com/v1/openai"
MODELS_URL = "https://api.deepinfra.com/models/featured"
DEFAULT_MODEL = "meta-llama/Llama-3.3-70B-Instruct"

_THINKING_MODELS = (
    "deepseek-ai/DeepSeek-R1",
    "Qwen/QwQ-32B",
    "microsoft/phi-4-reasoning-plus",
)
_VISION_MODELS = (
    "meta-llama/Llama-3.2-90B-Vision-Instruct",
    "microsoft/Phi-4-multimodal-instruct",
)
_NO_TOOL_MODELS = (
    "deepseek-ai/DeepSeek-R1",
    "Qwen/QwQ-32B",
)


def default_provider() -> AiProvider:
    return AiProvider(
        id=PROVIDER_ID,
        name="DeepInfra",
        base_url=BASE_URL,
        models_endpoint=MODELS_URL,
        requires_api_key=False,
        supports_vision=True,
    )


def default_models() -> list[AiModel]:
    return [
        make_model(
            "meta-llama/Llama-3.3-70B-Instruct",
            display_name="Llama 3.3 70B",
            alias="llama-3.3-70b",
            description="Latest Llama 3.3 instruction-tuned model",
            context_length=131072,
            max_output_tokens=4096,
            is_default=True,
        ),
        make_model(
            "meta-llama/Meta-Llama-3.1-8B-Instruct",
            display_name="Llama 3.1 8B",
            alias="llama-3.1-8b",
            context_length=131072,
        ),
        make_model(
            "meta-llama/Llama-3.2-90B-Vision-Instruct",
            display_name="Llama 3.2 90B Vision",
            alias="llama-3.2-90b",
            context_length=131072,
        ),
        make_model(
            "deepseek-ai/DeepSeek-V3-0324",
            display_name="DeepSeek V3",
            alias="deepseek-v3",
            context_length=65536,
        ),
        make_model(
            "deepseek-ai/DeepSeek-R1",
            display_name="DeepSeek R1",
            alias="deepseek-r1",
            description="Reasoning model with thinking process output",
            context_length=65536,
            max_output_tokens=8192,
        ),
        make_model(
            "Qwen/Qwen3-32B",
            display_name="Qwen 3 32B",
            alias="qwen-3-32b",
            context_length=32768,
        ),
        make_model(
            "Qwen/QwQ-32B",
            display_name="QwQ 32B",
            alias="qwq-32b",
            context_length=32768,
        ),
    ]


def make_model(model_name: str, **fields: Any) -> AiModel:
    """Build a DeepInfra model, inferring capability flags from known model families."""
    thinking = _matches(model_name, _THINKING_MODELS)
    vision = _matches(model_name, _VISION_MODELS)
    if thinking:
        category = ModelCategory.REASONING
    elif vision:
        category = ModelCategory.VISION
    else:
        category = ModelCategory.CHAT

    defaults: dict[str, Any] = {
        "id": f"{PROVIDER_ID}:{model_name}",
        "provider_id": PROVIDER_ID,
        "model_id": model_name,
        "display_name": _display_name(model_name),
        "supports_tool_calling": not _matches(model_name, _NO_TOOL_MODELS),
        "supports_vision": vision,
        "supports_reasoning": thinking,
        "is_thinking_model": thinking,
        "category": category,
    }
    defaults.update(fields)
    return AiModel(**defaults)


class DeepInfraProvider(OpenAIProvider):
    """DeepInfra's OpenAI-compatible endpoint."""

    name = "deepinfra"

    def __init__(self, config: AiProvider | None = None, **kwargs: Any) -> None:
        super().__init__(config or default_provider(), **kwargs)

    async def fetch_models(self) -> list[AiModel]:
        """Fetch featured text-generation models, falling back to the bundled list."""
        url = self.config.models_url or MODELS_URL
        try:
            response = await self._client.get(url)
        except httpx.TransportError as exc:
            raise TransportFailure(f"{self.config.id}: {exc!r}") from exc
        if response.status_code >= 400:
            raise ApiError.from_response(response.status_code, response.content, response.headers)

        entries = response.json()
        models = []
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            if entry.get("type") != "text-generation" or not entry.get("model_name"):
                continue
            name = entry["model_name"]
            models.append(
                make_model(
                    name,
                    description=entry.get("description"),
                    context_length=entry.get("max_tokens") or 4096,
                    max_output_tokens=entry.get("max_output_tokens") or 2048,
                    is_default=name == DEFAULT_MODEL,
                )
            )
        if not models:
            self._logger.info("DeepInfra returned no featured models; using bundled defaults")
            return default_models()
        return models


def _matches(model_name: str, known: tuple[str, ...]) -> bool:
    return any(name in model_name for name in known)


def _display_name(model_name: str) -> str:
    parts = model_name.split("/")
    if len(parts) > 1:
        return parts[1].replace("-", " ").replace("_", " ")
    return model_name
