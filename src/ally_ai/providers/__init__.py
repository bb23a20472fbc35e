"""Provider definitions for ally_ai."""

from typing import Any

from .base import AiModel, AiProvider, BaseProvider
from .deepinfra import DeepInfraProvider
from .openai import OpenAIProvider

__all__ = [
    "AiModel",
    "AiProvider",
    "BaseProvider",
    "OpenAIProvider",
    "DeepInfraProvider",
    "create_provider",
]

_PROVIDER_CLASSES: dict[str, type[OpenAIProvider]] = {
    "deepinfra": DeepInfraProvider,
}


def create_provider(config: AiProvider, **kwargs: Any) -> BaseProvider:
    """Instantiate the transport for a configured provider.

    Providers without a dedicated class are assumed to be OpenAI-compatible.
    """
    cls = _PROVIDER_CLASSES.get(config.id, OpenAIProvider)
    return cls(config, **kwargs)
