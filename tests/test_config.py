import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from ally_ai import config
from ally_ai.errors import CatalogError


class ConfigTests(unittest.TestCase):
    def test_default_settings_from_environment(self) -> None:
        env = {
            "ALLY_AI_DEFAULT_MODEL": "deepinfra:deepseek-ai/DeepSeek-R1",
            "ALLY_AI_IDLE_TIMEOUT": "12.5",
            "ALLY_AI_LOG_LEVEL": "DEBUG",
        }
        with mock.patch.dict(os.environ, env):
            settings = config.get_default_settings()
        self.assertEqual(settings["default_model_id"], "deepinfra:deepseek-ai/DeepSeek-R1")
        self.assertEqual(settings["idle_timeout_s"], 12.5)
        self.assertEqual(settings["log_level"], "DEBUG")
        self.assertEqual(
            config.provider_options(settings),
            {"timeout_s": settings["timeout_s"], "idle_timeout_s": 12.5, "total_timeout_s": settings["total_timeout_s"]},
        )

    def test_api_key_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"ALLY_AI_MY_LLM_API_KEY": "sk-env"}):
            self.assertEqual(config.api_key_for("my-llm"), "sk-env")
        with mock.patch.dict(os.environ, {"ALLY_AI_MY_LLM_API_KEY": ""}):
            self.assertIsNone(config.api_key_for("my-llm"))

    def test_bundled_catalog(self) -> None:
        with mock.patch.dict(os.environ, {"ALLY_AI_DEEPINFRA_API_KEY": "di-key"}):
            registry = config.create_registry({"catalog_path": None, "default_model_id": None})
        self.assertEqual(registry.get_default_model().model_id, "meta-llama/Llama-3.3-70B-Instruct")
        self.assertEqual(registry.get_provider("deepinfra").api_key, "di-key")
        self.assertTrue(registry.resolve_model("deepseek-r1").is_thinking_model)

    def test_load_catalog_file(self) -> None:
        catalog = {
            "providers": [
                {"id": "local", "name": "Local", "base_url": "http://localhost:8080/v1"},
                {"id": "hosted", "name": "Hosted", "base_url": "https://hosted.test/v1", "requires_api_key": True, "api_key": "from-file"},
            ],
            "models": [
                {"id": "local:tiny", "provider_id": "local", "model_id": "tiny", "display_name": "Tiny"},
                {"id": "hosted:big", "provider_id": "hosted", "model_id": "big", "display_name": "Big", "is_default": True},
            ],
            "default_model_id": "local:tiny",
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "catalog.json"
            path.write_text(json.dumps(catalog), encoding="utf-8")
            with mock.patch.dict(os.environ, {"ALLY_AI_HOSTED_API_KEY": "from-env", "ALLY_AI_LOCAL_API_KEY": "local-env"}):
                registry = config.create_registry({"catalog_path": str(path), "default_model_id": None})

        self.assertEqual(registry.get_default_model().id, "local:tiny")
        self.assertEqual(registry.get_provider("hosted").api_key, "from-file")
        self.assertEqual(registry.get_provider("local").api_key, "local-env")

    def test_settings_default_model_overrides_catalog(self) -> None:
        registry = config.create_registry({"catalog_path": None, "default_model_id": "deepinfra:Qwen/QwQ-32B"})
        self.assertEqual(registry.get_default_model().alias, "qwq-32b")

    def test_invalid_catalog_rejected(self) -> None:
        catalog = {
            "providers": [],
            "models": [{"id": "x:y", "provider_id": "x", "model_id": "y", "display_name": "Y"}],
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "catalog.json"
            path.write_text(json.dumps(catalog), encoding="utf-8")
            with self.assertRaises(CatalogError):
                config.create_registry({"catalog_path": str(path)})


if __name__ == "__main__":
    unittest.main()
