"""In-memory catalog of configured providers and models."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ally_ai.errors import CatalogError, UnknownModel, UnknownProvider
from ally_ai.providers.base import AiModel, AiProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Read-only lookup over providers and models synchronized from configuration.

    The registry performs no I/O. Whoever owns configuration storage calls
    :meth:`sync` whenever it changes.
    """

    def __init__(
        self,
        providers: Iterable[AiProvider] = (),
        models: Iterable[AiModel] = (),
        default_model_id: str | None = None,
    ) -> None:
        self._providers: dict[str, AiProvider] = {}
        self._models: dict[str, AiModel] = {}
        self._default_model_id: str | None = None
        self.sync(providers, models, default_model_id)

    def sync(
        self,
        providers: Iterable[AiProvider],
        models: Iterable[AiModel],
        default_model_id: str | None = None,
    ) -> None:
        """Replace the catalog wholesale."""
        provider_map = {p.id: p for p in providers}
        model_map: dict[str, AiModel] = {}
        for model in models:
            if model.provider_id not in provider_map:
                raise CatalogError(f"Model '{model.id}' references unknown provider '{model.provider_id}'.")
            model_map[model.id] = model
        _check_single_default(model_map.values())

        self._providers = provider_map
        self._models = model_map
        self._default_model_id = default_model_id
        logger.debug("Catalog synced: %d providers, %d models", len(provider_map), len(model_map))

    def upsert_models(self, provider_id: str, models: Iterable[AiModel]) -> None:
        """Merge models discovered from a provider into the catalog."""
        self.get_provider(provider_id)
        merged = dict(self._models)
        for model in models:
            if model.provider_id != provider_id:
                raise CatalogError(f"Model '{model.id}' does not belong to provider '{provider_id}'.")
            existing = merged.get(model.id)
            if existing is not None:
                # Keep user edits to enablement, alias and default selection.
                model = model.model_copy(
                    update={
                        "is_enabled": existing.is_enabled,
                        "alias": existing.alias,
                        "is_default": existing.is_default,
                    }
                )
            elif any(m.is_default for m in merged.values() if m.provider_id == provider_id):
                model = model.model_copy(update={"is_default": False})
            merged[model.id] = model
        _check_single_default(merged.values())
        self._models = merged

    def get_provider(self, provider_id: str) -> AiProvider:
        try:
            return self._providers[provider_id]
        except KeyError as exc:
            raise UnknownProvider(provider_id) from exc

    def list_enabled_providers(self) -> list[AiProvider]:
        return [p for p in self._providers.values() if p.is_enabled]

    def list_enabled_models(self, provider_id: str) -> list[AiModel]:
        provider = self._providers.get(provider_id)
        if provider is None or not provider.is_enabled:
            return []
        return [m for m in self._models.values() if m.provider_id == provider_id and m.is_enabled]

    def resolve_model(self, model_id: str) -> AiModel:
        """Return a usable model by id (or alias).

        Raises ``UnknownModel`` when the model is missing, disabled, or served
        by a disabled provider.
        """
        model = self._models.get(model_id)
        if model is None:
            model = next((m for m in self._models.values() if m.alias == model_id), None)
        if model is None or not model.is_enabled:
            raise UnknownModel(model_id)
        provider = self._providers.get(model.provider_id)
        if provider is None or not provider.is_enabled:
            raise UnknownModel(model_id)
        return model

    def get_default_model(self) -> AiModel | None:
        """The user's selected model, else a provider default, else any enabled model."""
        if self._default_model_id:
            try:
                return self.resolve_model(self._default_model_id)
            except UnknownModel:
                logger.warning("Selected default model %s is unavailable", self._default_model_id)

        enabled = [m for p in self.list_enabled_providers() for m in self.list_enabled_models(p.id)]
        for model in enabled:
            if model.is_default:
                return model
        return enabled[0] if enabled else None


def _check_single_default(models: Iterable[AiModel]) -> None:
    seen: set[str] = set()
    for model in models:
        if not model.is_default:
            continue
        if model.provider_id in seen:
            raise CatalogError(f"Provider '{model.provider_id}' has more than one default model.")
        seen.add(model.provider_id)
