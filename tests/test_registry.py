import unittest

from ally_ai.errors import CatalogError, UnknownModel, UnknownProvider
from ally_ai.providers.base import AiModel, AiProvider, ModelPricing
from ally_ai.registry import ProviderRegistry
from ally_ai.types import UsageInfo


def _model(model_id: str, provider_id: str = "alpha", **fields) -> AiModel:
    return AiModel(
        id=f"{provider_id}:{model_id}",
        provider_id=provider_id,
        model_id=model_id,
        display_name=model_id.title(),
        **fields,
    )


class ProviderRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.providers = [
            AiProvider(id="alpha", name="Alpha", base_url="https://alpha.test/v1"),
            AiProvider(id="beta", name="Beta", base_url="https://beta.test/v1", is_enabled=False),
        ]
        self.models = [
            _model("small"),
            _model("large", is_default=True, alias="big"),
            _model("retired", is_enabled=False),
            _model("hidden", provider_id="beta", is_default=True),
        ]
        self.registry = ProviderRegistry(self.providers, self.models)

    def test_lists_only_enabled(self) -> None:
        self.assertEqual([p.id for p in self.registry.list_enabled_providers()], ["alpha"])
        self.assertEqual(
            [m.id for m in self.registry.list_enabled_models("alpha")],
            ["alpha:small", "alpha:large"],
        )
        self.assertEqual(self.registry.list_enabled_models("beta"), [])
        self.assertEqual(self.registry.list_enabled_models("missing"), [])

    def test_resolve_model(self) -> None:
        self.assertEqual(self.registry.resolve_model("alpha:small").model_id, "small")
        self.assertEqual(self.registry.resolve_model("big").id, "alpha:large")

    def test_resolve_rejects_missing_disabled_and_disabled_provider(self) -> None:
        for model_id in ("alpha:nope", "alpha:retired", "beta:hidden"):
            with self.subTest(model_id=model_id):
                with self.assertRaises(UnknownModel):
                    self.registry.resolve_model(model_id)

    def test_default_model_prefers_user_selection(self) -> None:
        self.assertEqual(self.registry.get_default_model().id, "alpha:large")
        self.registry.sync(self.providers, self.models, default_model_id="alpha:small")
        self.assertEqual(self.registry.get_default_model().id, "alpha:small")

    def test_default_model_falls_back_when_selection_unavailable(self) -> None:
        self.registry.sync(self.providers, self.models, default_model_id="beta:hidden")
        self.assertEqual(self.registry.get_default_model().id, "alpha:large")

    def test_default_model_none_when_empty(self) -> None:
        self.assertIsNone(ProviderRegistry().get_default_model())

    def test_sync_validates_catalog(self) -> None:
        with self.assertRaises(CatalogError):
            ProviderRegistry(self.providers, [_model("orphan", provider_id="gamma")])
        with self.assertRaises(CatalogError):
            ProviderRegistry(self.providers, [_model("a", is_default=True), _model("b", is_default=True)])

    def test_get_provider(self) -> None:
        self.assertEqual(self.registry.get_provider("beta").name, "Beta")
        with self.assertRaises(UnknownProvider):
            self.registry.get_provider("gamma")

    def test_upsert_models_keeps_user_edits(self) -> None:
        discovered = [
            _model("small", context_length=8192),
            _model("fresh", is_default=True),
        ]
        self.registry.upsert_models("alpha", discovered)
        self.assertEqual(self.registry.resolve_model("alpha:small").context_length, 8192)
        self.assertEqual(self.registry.resolve_model("alpha:fresh").is_default, False)
        self.assertEqual(self.registry.get_default_model().id, "alpha:large")

    def test_upsert_models_rejects_foreign_models(self) -> None:
        with self.assertRaises(CatalogError):
            self.registry.upsert_models("alpha", [_model("x", provider_id="beta")])


class AiModelTests(unittest.TestCase):
    def test_alias_preferred_over_display_name(self) -> None:
        self.assertEqual(_model("one").display_name_or_alias, "One")
        self.assertEqual(_model("one", alias="Fast").display_name_or_alias, "Fast")

    def test_estimate_cost(self) -> None:
        usage = UsageInfo(prompt_tokens=2_000, completion_tokens=500, total_tokens=2_500)
        self.assertIsNone(_model("one").estimate_cost(usage))
        priced = _model("one", pricing=ModelPricing(input_per_million=3.0, output_per_million=15.0))
        self.assertAlmostEqual(priced.estimate_cost(usage), 0.0135)


if __name__ == "__main__":
    unittest.main()
