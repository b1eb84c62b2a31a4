"""
Configuration management for DDI Miner.

Uses pydantic-settings for environment variable loading and validation.
Per-run options live in ddiminer.models.run.MiningConfig.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DDIMINER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream APIs
    clinical_trials_url: str = Field(
        default="https://clinicaltrials.gov/api/v2/studies",
        description="ClinicalTrials.gov v2 studies endpoint",
    )
    openfda_label_url: str = Field(
        default="https://api.fda.gov/drug/label.json",
        description="openFDA drug label endpoint",
    )
    eutils_url: str = Field(
        default="https://eutils.ncbi.nlm.nih.gov/entrez/eutils",
        description="NCBI E-utilities base URL",
    )
    dailymed_url: str = Field(
        default="https://dailymed.nlm.nih.gov/dailymed/services/v2",
        description="DailyMed SPL services base URL (label fallback)",
    )
    dailymed_fallback: bool = Field(
        default=True, description="Search DailyMed SPLs when openFDA has no label for a drug"
    )
    rxnav_url: str = Field(
        default="https://rxnav.nlm.nih.gov/REST",
        description="RxNav REST base URL",
    )
    ncbi_api_key: str | None = Field(default=None, description="NCBI API key (raises rate limit)")
    ncbi_email: str | None = Field(default=None, description="Contact email sent to NCBI")
    user_agent: str = Field(default="ddiminer/0.1", description="User-Agent header")

    # HTTP behaviour
    request_timeout: float = Field(default=30.0, description="Per-request timeout in seconds")
    max_attempts: int = Field(default=3, ge=1, description="Attempt cap for transient errors")
    backoff_min: float = Field(default=1.0, ge=0, description="Minimum exponential backoff (s)")
    backoff_max: float = Field(default=10.0, ge=0, description="Maximum exponential backoff (s)")
    rate_limit_backoff: float = Field(
        default=30.0, ge=0, description="Backoff after HTTP 429 when no Retry-After is sent (s)"
    )
    rate_limit_attempts: int = Field(default=2, ge=1, description="Attempts allowed on HTTP 429")

    # Per-source minimum spacing between requests (seconds)
    clinical_trials_interval: float = Field(default=0.2, ge=0)
    openfda_interval: float = Field(default=0.25, ge=0)
    ncbi_interval: float = Field(default=0.35, ge=0)

    # Extraction cache
    cache_ttl: float = Field(default=24 * 3600, ge=0, description="Extractor result TTL (s)")

    # Storage and logging
    data_dir: Path = Field(default=Path("data"), description="JSON repository directory")
    log_dir: Path = Field(default=Path("logs"), description="Run event log directory")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )


# Global settings instance
settings = Settings()
