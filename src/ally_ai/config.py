"""Settings and environment variable management."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from ally_ai.providers import deepinfra
from ally_ai.providers.base import AiModel, AiProvider
from ally_ai.registry import ProviderRegistry

# Load environment variables
load_dotenv()

ENV_PREFIX = "ALLY_AI_"


class Catalog(BaseModel):
    """Provider/model configuration as stored by the application."""

    providers: list[AiProvider] = Field(default_factory=list)
    models: list[AiModel] = Field(default_factory=list)
    default_model_id: str | None = None


def get_default_settings() -> dict[str, Any]:
    """Get client settings from environment variables."""
    return {
        "catalog_path": os.getenv(f"{ENV_PREFIX}CATALOG"),
        "default_model_id": os.getenv(f"{ENV_PREFIX}DEFAULT_MODEL"),
        "timeout_s": float(os.getenv(f"{ENV_PREFIX}TIMEOUT", "60")),
        "idle_timeout_s": float(os.getenv(f"{ENV_PREFIX}IDLE_TIMEOUT", "30")),
        "total_timeout_s": float(os.getenv(f"{ENV_PREFIX}TOTAL_TIMEOUT", "300")),
        "log_level": os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO"),
    }


def provider_options(settings: dict[str, Any] | None = None) -> dict[str, float]:
    """Transport keyword arguments derived from settings."""
    settings = settings or get_default_settings()
    return {key: settings[key] for key in ("timeout_s", "idle_timeout_s", "total_timeout_s")}


def api_key_for(provider_id: str) -> str | None:
    """API key for a provider from ``ALLY_AI_<PROVIDER_ID>_API_KEY``."""
    env_name = f"{ENV_PREFIX}{provider_id.upper().replace('-', '_')}_API_KEY"
    return os.getenv(env_name) or None


def load_catalog(path: str | Path) -> Catalog:
    """Read and validate a JSON catalog file."""
    with open(path, encoding="utf-8") as fh:
        catalog = Catalog.model_validate(json.load(fh))
    return _with_env_keys(catalog)


def default_catalog() -> Catalog:
    return _with_env_keys(
        Catalog(
            providers=[deepinfra.default_provider()],
            models=deepinfra.default_models(),
        )
    )


def create_registry(settings: dict[str, Any] | None = None) -> ProviderRegistry:
    """Build a registry from the configured catalog, or the bundled one."""
    settings = settings or get_default_settings()
    path = settings.get("catalog_path")
    catalog = load_catalog(path) if path else default_catalog()
    default_model_id = settings.get("default_model_id") or catalog.default_model_id
    return ProviderRegistry(catalog.providers, catalog.models, default_model_id)


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """Configure a single stream handler for the package loggers."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("ally_ai")


def _with_env_keys(catalog: Catalog) -> Catalog:
    providers = []
    for provider in catalog.providers:
        if not provider.api_key:
            key = api_key_for(provider.id)
            if key:
                provider = provider.model_copy(update={"api_key": key})
        providers.append(provider)
    return catalog.model_copy(update={"providers": providers})
