"""Centralized configuration for flashcard-search using Pydantic Settings."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SearchSettings(BaseSettings):
    """Strictly typed engine configuration loaded from environment variables.

    Every value can be overridden with a ``FLASHCARD_SEARCH_`` prefixed
    environment variable (or a ``.env`` file), e.g.
    ``FLASHCARD_SEARCH_PARALLEL_THRESHOLD=5000``.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLASHCARD_SEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Rebuild settings
    parallel_threshold: int = Field(
        default=1500,
        ge=1,
        description="Collection size at which full rebuilds try worker-assisted tokenization",
    )
    max_index_workers: int = Field(default=8, ge=1, description="Upper bound on tokenization workers")
    rebuild_chunk_size: int = Field(
        default=120,
        ge=1,
        description="Cards tokenized between two bulk writes and cooperative yields",
    )

    # Ranking settings
    trigram_batch_size: int = Field(
        default=120,
        ge=1,
        description="Maximum trigrams looked up per batch during fuzzy ranking",
    )

    # Tokenizer settings
    min_term_length: int = Field(default=2, ge=1, description="Shortest term kept by the tokenizer")
    max_term_length: int = Field(default=40, ge=2, description="Terms must be strictly shorter than this")

    # Bloom membership map
    bloom_bits: int = Field(default=256, ge=8, le=4096, description="Bits per card bloom filter")
    bloom_hashes: int = Field(default=3, ge=1, le=8, description="Hash functions per term")

    # Diagnostics
    latency_history_size: int = Field(default=200, ge=1, description="Rolling search-duration history size")

    # Logging
    log_level: str = Field(default="info", description="Level of the flashcard_search logger")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")

    # Telemetry
    telemetry_enabled: bool = Field(
        default=False,
        description="Install OpenTelemetry SDK tracer and meter providers when the service is built",
    )
    service_name: str = Field(default="flashcard-search", min_length=1, description="OpenTelemetry service.name")

    @model_validator(mode="after")
    def _check_bounds(self) -> "SearchSettings":
        if self.min_term_length >= self.max_term_length:
            raise ValueError("min_term_length must be smaller than max_term_length")
        if self.bloom_bits % 8:
            raise ValueError("bloom_bits must be a multiple of 8")
        return self


def get_settings() -> SearchSettings:
    """Load settings from the environment."""
    return SearchSettings()
