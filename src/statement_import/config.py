"""
Configuration management (SSOT).

This module defines ALL configuration for the statement import pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Pipeline limits (batch size, parallelism, retries, timeouts) are inputs,
  never hardwired in pipeline code
- Secrets (API key, ledger token) may come from the environment only
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class PipelineConfig:
    """Batching, concurrency and retry settings."""

    # Rows per batch
    batch_size: int = 25
    # Maximum concurrent stage calls (worker pool size)
    parallel_count: int = 3
    # Attempts per batch and stage before it becomes a terminal failure
    max_retries: int = 3
    # Backoff: attempt n waits min(base * 2^(n-1), max) before re-dispatch
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    # Per external call timeout (seconds)
    call_timeout_seconds: float = 120.0
    # AI confidence below this flags the transaction for review
    low_confidence_threshold: float = 0.7


@dataclass
class AIGatewayConfig:
    """AI gateway (OpenAI-compatible chat completions) configuration.

    - base_url: Gateway root, `/chat/completions` is appended
    - api_key: Bearer token, usually from AI_GATEWAY_API_KEY
    """

    base_url: str = "https://ai.gateway.example.com/v1"
    api_key: str = ""
    extraction_model: str = "google/gemini-2.5-pro"
    categorization_model: str = "google/gemini-2.5-flash"
    # Request timeout (seconds); the pipeline call timeout caps it per call
    timeout_seconds: float = 120.0
    max_tokens: int = 32000


@dataclass
class LedgerConfig:
    """Permanent transaction store.

    backend:
    - sqlite: ledger table in the state database (transfer is one transaction)
    - http: REST ledger service (idempotent by external_id)
    """

    backend: str = "sqlite"
    base_url: str = ""
    token: str = ""
    timeout: int = 30


@dataclass
class VatConfig:
    """VAT separation applied when transferring to the ledger."""

    default_rate: int = 20
    exempt_category_types: list[str] = field(
        default_factory=lambda: ["PARTNER", "FINANCING", "EXCLUDED"]
    )
    exempt_category_codes: list[str] = field(
        default_factory=lambda: [
            "FAIZ_IN",
            "FAIZ_OUT",
            "VERGI",
            "SSK",
            "BANKA_MASRAF",
            "KREDI",
            "KREDI_IN",
            "KREDI_OUT",
            "LEASING",
            "FAKTORING",
        ]
    )


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    ai: AIGatewayConfig = field(default_factory=AIGatewayConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    vat: VatConfig = field(default_factory=VatConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # Owner of sessions started from this installation
    user_id: str = "local"

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.pipeline.batch_size <= 0:
            errors.append("pipeline.batch_size must be > 0")
        if self.pipeline.parallel_count <= 0:
            errors.append("pipeline.parallel_count must be > 0")
        if self.pipeline.max_retries <= 0:
            errors.append("pipeline.max_retries must be > 0")
        if self.pipeline.base_delay_seconds < 0:
            errors.append("pipeline.base_delay_seconds must be >= 0")
        if self.pipeline.max_delay_seconds < self.pipeline.base_delay_seconds:
            errors.append("pipeline.max_delay_seconds must be >= base_delay_seconds")
        if self.pipeline.call_timeout_seconds <= 0:
            errors.append("pipeline.call_timeout_seconds must be > 0")
        if not 0.0 <= self.pipeline.low_confidence_threshold <= 1.0:
            errors.append("pipeline.low_confidence_threshold must be between 0 and 1")

        if not self.ai.base_url:
            errors.append("ai.base_url is required")
        if not self.ai.api_key:
            errors.append("ai.api_key is required (or set AI_GATEWAY_API_KEY)")

        if self.ledger.backend not in ("sqlite", "http"):
            errors.append("ledger.backend must be 'sqlite' or 'http'")
        if self.ledger.backend == "http" and not self.ledger.base_url:
            errors.append("ledger.base_url is required when ledger.backend is 'http'")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default  # Keep default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - STATEMENT_IMPORT_DB (state database path)
    - STATEMENT_IMPORT_USER (session owner)
    - AI_GATEWAY_URL
    - AI_GATEWAY_API_KEY
    - AI_GATEWAY_TIMEOUT (request timeout in seconds)
    - LEDGER_URL
    - LEDGER_TOKEN
    - IMPORT_BATCH_SIZE
    - IMPORT_PARALLEL_COUNT
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Pipeline config
    pipeline_data = data.get("pipeline", {})
    pipeline = PipelineConfig(
        batch_size=_env_int("IMPORT_BATCH_SIZE", pipeline_data.get("batch_size", 25)),
        parallel_count=_env_int(
            "IMPORT_PARALLEL_COUNT", pipeline_data.get("parallel_count", 3)
        ),
        max_retries=pipeline_data.get("max_retries", 3),
        base_delay_seconds=float(pipeline_data.get("base_delay_seconds", 2.0)),
        max_delay_seconds=float(pipeline_data.get("max_delay_seconds", 30.0)),
        call_timeout_seconds=float(pipeline_data.get("call_timeout_seconds", 120.0)),
        low_confidence_threshold=float(pipeline_data.get("low_confidence_threshold", 0.7)),
    )

    # AI gateway config
    ai_data = data.get("ai", {})
    ai = AIGatewayConfig(
        base_url=os.environ.get(
            "AI_GATEWAY_URL", ai_data.get("base_url", "https://ai.gateway.example.com/v1")
        ),
        api_key=os.environ.get("AI_GATEWAY_API_KEY", ai_data.get("api_key", "")),
        extraction_model=ai_data.get("extraction_model", "google/gemini-2.5-pro"),
        categorization_model=ai_data.get("categorization_model", "google/gemini-2.5-flash"),
        timeout_seconds=float(
            os.environ.get("AI_GATEWAY_TIMEOUT", ai_data.get("timeout_seconds", 120.0))
        ),
        max_tokens=ai_data.get("max_tokens", 32000),
    )

    # Ledger config
    ledger_data = data.get("ledger", {})
    ledger = LedgerConfig(
        backend=ledger_data.get("backend", "sqlite"),
        base_url=os.environ.get("LEDGER_URL", ledger_data.get("base_url", "")),
        token=os.environ.get("LEDGER_TOKEN", ledger_data.get("token", "")),
        timeout=ledger_data.get("timeout", 30),
    )

    # VAT
    vat_data = data.get("vat", {})
    vat_defaults = VatConfig()
    vat = VatConfig(
        default_rate=vat_data.get("default_rate", vat_defaults.default_rate),
        exempt_category_types=vat_data.get(
            "exempt_category_types", vat_defaults.exempt_category_types
        ),
        exempt_category_codes=vat_data.get(
            "exempt_category_codes", vat_defaults.exempt_category_codes
        ),
    )

    # State DB
    state_db = os.environ.get("STATEMENT_IMPORT_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        pipeline=pipeline,
        ai=ai,
        ledger=ledger,
        vat=vat,
        state_db_path=Path(state_db),
        user_id=os.environ.get("STATEMENT_IMPORT_USER", data.get("user_id", "local")),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Bank Statement Import Pipeline Configuration
#
# Secrets can be left empty here and provided through the environment:
# AI_GATEWAY_API_KEY, LEDGER_TOKEN

# Batching, concurrency and retries
pipeline:
  batch_size: 25                 # Rows per batch
  parallel_count: 3              # Max concurrent AI calls
  max_retries: 3                 # Attempts per batch before it is reported as failed
  base_delay_seconds: 2.0        # Backoff base (doubles per attempt)
  max_delay_seconds: 30.0        # Backoff cap
  call_timeout_seconds: 120      # Timeout of a single AI call
  low_confidence_threshold: 0.7  # Below this a transaction is flagged for review

# AI gateway (OpenAI-compatible chat completions)
ai:
  base_url: "https://ai.gateway.example.com/v1"
  api_key: ""                    # Prefer AI_GATEWAY_API_KEY
  extraction_model: "google/gemini-2.5-pro"
  categorization_model: "google/gemini-2.5-flash"
  timeout_seconds: 120
  max_tokens: 32000

# Permanent transaction store
ledger:
  backend: "sqlite"              # sqlite (state database) or http
  base_url: ""                   # Required for http
  token: ""                      # Prefer LEDGER_TOKEN
  timeout: 30

# VAT separation on transfer
vat:
  default_rate: 20
  exempt_category_types: ["PARTNER", "FINANCING", "EXCLUDED"]

# State database path
state_db_path: "data/state.db"

# Session owner
user_id: "local"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
