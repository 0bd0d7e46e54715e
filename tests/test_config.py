"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from statement_import.config import Config, create_default_config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of the config under test."""
    for name in (
        "STATEMENT_IMPORT_DB",
        "STATEMENT_IMPORT_USER",
        "AI_GATEWAY_URL",
        "AI_GATEWAY_API_KEY",
        "AI_GATEWAY_TIMEOUT",
        "LEDGER_URL",
        "LEDGER_TOKEN",
        "IMPORT_BATCH_SIZE",
        "IMPORT_PARALLEL_COUNT",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """YAML loading and environment overrides."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.pipeline.batch_size == 25
        assert config.pipeline.parallel_count == 3
        assert config.pipeline.max_retries == 3
        assert config.ledger.backend == "sqlite"
        assert config.vat.default_rate == 20
        assert config.state_db_path == Path("data/state.db")

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "pipeline": {"batch_size": 10, "parallel_count": 5, "max_retries": 2},
                    "ai": {"api_key": "from-file", "extraction_model": "model-x"},
                    "ledger": {"backend": "http", "base_url": "http://ledger.test"},
                    "vat": {"default_rate": 10},
                    "state_db_path": str(tmp_path / "state.db"),
                    "user_id": "acme",
                }
            )
        )

        config = load_config(path)

        assert config.pipeline.batch_size == 10
        assert config.pipeline.parallel_count == 5
        assert config.pipeline.max_retries == 2
        assert config.ai.api_key == "from-file"
        assert config.ai.extraction_model == "model-x"
        assert config.ledger.backend == "http"
        assert config.vat.default_rate == 10
        assert config.state_db_path == tmp_path / "state.db"
        assert config.user_id == "acme"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"ai": {"api_key": "from-file"}}))
        monkeypatch.setenv("AI_GATEWAY_API_KEY", "from-env")
        monkeypatch.setenv("AI_GATEWAY_TIMEOUT", "45")
        monkeypatch.setenv("IMPORT_BATCH_SIZE", "7")
        monkeypatch.setenv("LEDGER_TOKEN", "token")
        monkeypatch.setenv("STATEMENT_IMPORT_USER", "env-user")

        config = load_config(path)

        assert config.ai.api_key == "from-env"
        assert config.ai.timeout_seconds == 45.0
        assert config.pipeline.batch_size == 7
        assert config.ledger.token == "token"
        assert config.user_id == "env-user"

    def test_invalid_integer_env_keeps_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IMPORT_PARALLEL_COUNT", "many")

        assert load_config(tmp_path / "missing.yaml").pipeline.parallel_count == 3

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).pipeline.batch_size == 25


class TestValidate:
    """Config.validate."""

    def test_defaults_need_api_key(self):
        errors = Config().validate()

        assert len(errors) == 1
        assert "api_key" in errors[0]

    def test_valid(self):
        config = Config()
        config.ai.api_key = "secret"

        assert config.validate() == []

    def test_pipeline_limits(self):
        config = Config()
        config.ai.api_key = "secret"
        config.pipeline.batch_size = 0
        config.pipeline.parallel_count = 0
        config.pipeline.max_delay_seconds = 1.0

        errors = config.validate()

        assert "pipeline.batch_size must be > 0" in errors
        assert "pipeline.parallel_count must be > 0" in errors
        assert "pipeline.max_delay_seconds must be >= base_delay_seconds" in errors

    def test_http_ledger_needs_url(self):
        config = Config()
        config.ai.api_key = "secret"
        config.ledger.backend = "http"

        assert config.validate() == ["ledger.base_url is required when ledger.backend is 'http'"]


class TestCreateDefaultConfig:
    """The init-config template."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"

        create_default_config(path)
        config = load_config(path)

        assert path.exists()
        assert config.pipeline.batch_size == 25
        assert config.ai.categorization_model == "google/gemini-2.5-flash"
        assert config.vat.exempt_category_types == ["PARTNER", "FINANCING", "EXCLUDED"]
