"""Propex configuration settings.

Every component receives its own immutable section at construction time.
Nothing reads configuration from module-level state after startup.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


def _csv_env(var_name: str) -> tuple[str, ...]:
    raw = os.getenv(var_name, "")
    return tuple(item.strip().lower().rstrip(".") for item in raw.split(",") if item.strip())


def _int_env(var_name: str, default: int) -> int:
    return int(os.getenv(var_name, str(default)))


class _Frozen(BaseModel):
    model_config = {"frozen": True}


class VertexConfig(_Frozen):
    """Vertex AI configuration."""

    project_id: str = Field(default_factory=lambda: os.getenv("VERTEX_PROJECT_ID", ""))
    location: str = Field(default_factory=lambda: os.getenv("VERTEX_LOCATION", "us-central1"))
    credentials_path: str = Field(
        default_factory=lambda: os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "")
    )
    model: str = Field(default_factory=lambda: os.getenv("PROPEX_MODEL", "gemini-2.5-flash"))
    temperature: float = 0.1
    max_output_tokens: int = 8192


class RetryConfig(_Frozen):
    """Retry and backoff configuration for provider calls."""

    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    jitter: bool = True


class TimeoutConfig(_Frozen):
    """Timeout budgets per fetch tier and per job."""

    tier1_timeout_s: float = 8.0
    tier2_timeout_s: float = 15.0
    tier3_timeout_s: float = 30.0
    llm_timeout_s: float = 120.0
    pdf_download_timeout_s: float = 30.0
    job_timeout_s: float = 600.0


class BrowserConfig(_Frozen):
    """Headless render pool configuration."""

    headless: bool = True
    pool_size: int = Field(
        default_factory=lambda: _int_env("PROPEX_BROWSER_POOL_SIZE", 3), validate_default=True
    )
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str | None = None
    locale: str = "de-DE"
    settle_ms: int = 1500

    @field_validator("pool_size")
    @classmethod
    def _validate_pool_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PROPEX_BROWSER_POOL_SIZE must be >= 1")
        return value


class FetchConfig(_Frozen):
    """Tier 1/2 HTTP fetch behaviour and content-quality thresholds."""

    min_content_chars: int = 500
    max_response_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 5
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    accept_language: str = "de-DE,de;q=0.9,en;q=0.8"


class RateLimitConfig(_Frozen):
    """Token-bucket budgets. Rates are requests per second."""

    search_rate: float = 1.0
    search_burst: int = 2
    llm_rate: float = 0.5
    llm_burst: int = 2
    domain_rate: float = 2.0
    domain_burst: int = 4


class ScoringConfig(_Frozen):
    """Source scoring: domain lists, manufacturer bonus, result cap."""

    manufacturer_domains: tuple[str, ...] = Field(
        default_factory=lambda: _csv_env("PROPEX_MANUFACTURER_DOMAINS")
    )
    excluded_domains: tuple[str, ...] = Field(
        default_factory=lambda: _csv_env("PROPEX_EXCLUDED_DOMAINS")
    )
    manufacturer_bonus: float = 0.3
    max_results: int = 10

    @field_validator("manufacturer_bonus")
    @classmethod
    def _validate_bonus(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("manufacturer_bonus must be within [0, 1]")
        return value


class ModelPrice(_Frozen):
    """USD per one million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal


def _default_price_table() -> dict[str, ModelPrice]:
    return {
        "gemini-2.5-flash": ModelPrice(
            input_per_million=Decimal("0.30"), output_per_million=Decimal("2.50")
        ),
        "gemini-2.5-flash-lite": ModelPrice(
            input_per_million=Decimal("0.10"), output_per_million=Decimal("0.40")
        ),
        "gemini-2.5-pro": ModelPrice(
            input_per_million=Decimal("1.25"), output_per_million=Decimal("10.00")
        ),
        "gemini-2.0-flash": ModelPrice(
            input_per_million=Decimal("0.10"), output_per_million=Decimal("0.40")
        ),
    }


class PricingConfig(_Frozen):
    """Per-model price table with a fallback for unknown models."""

    models: dict[str, ModelPrice] = Field(default_factory=_default_price_table)
    default: ModelPrice = ModelPrice(
        input_per_million=Decimal("1.25"), output_per_million=Decimal("10.00")
    )


class ExtractionConfig(_Frozen):
    """Batched extraction and reconciliation knobs."""

    context_budget_tokens: int = 900_000
    chars_per_token: float = 4.0
    agreement_bonus: int = 5


class StorageConfig(_Frozen):
    """Where job results, signal ledgers and usage ledgers are written."""

    data_dir: Path = Field(default_factory=lambda: Path(os.getenv("PROPEX_DATA_DIR", "./data")))

    @property
    def usage_ledger(self) -> Path:
        return self.data_dir / "usage.jsonl"


class PropexConfig(_Frozen):
    """Root configuration for the extraction engine."""

    vertex: VertexConfig = Field(default_factory=VertexConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    bulk_parallelism: int = Field(
        default_factory=lambda: _int_env("PROPEX_BULK_PARALLELISM", 2), validate_default=True
    )
    search_api_key: str = Field(default_factory=lambda: os.getenv("VALUESERP_API_KEY", ""))
    log_level: str = Field(default_factory=lambda: os.getenv("PROPEX_LOG_LEVEL", "INFO"))

    @field_validator("bulk_parallelism")
    @classmethod
    def _validate_parallelism(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PROPEX_BULK_PARALLELISM must be >= 1")
        return value
