"""Application configuration for the DAX performance engine."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from environment (``QT_DAX_PERF_*``) or ``.env``."""

    # Optimization loop
    acceptance_threshold: float = 0.10
    baseline_repetitions: int = 3
    max_attempts: int = 20
    continue_after_accept: bool = False

    # Execution
    execution_timeout_s: float = 300.0
    trace_retries: int = 1

    # Trace classification
    full_scan_ratio: float = 100.0
    full_scan_min_rows: int = 10_000
    semijoin_selectivity_ratio: float = 0.5
    low_parallelism_factor: float = 1.2
    low_parallelism_min_scan_ms: float = 20.0

    # Equivalence
    relative_tolerance: float = 1e-9
    absolute_tolerance: float = 1e-12
    sample_mismatch_limit: int = 5

    # Power BI Desktop
    pbi_port: Optional[int] = None

    # LLM proposer (optional)
    llm_model: str = ""
    llm_api_key: str = ""

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "QT_DAX_PERF_"
        env_file = ".env"

    @field_validator("acceptance_threshold")
    @classmethod
    def validate_acceptance_threshold(cls, v):
        """Threshold is a fraction of the baseline duration."""
        if not 0 < v < 1:
            raise ValueError("acceptance_threshold must be between 0 and 1 (exclusive)")
        return v

    @field_validator("baseline_repetitions", "max_attempts")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @field_validator("trace_retries")
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("trace_retries must be >= 0")
        return v

    @property
    def has_llm_provider(self) -> bool:
        """Check if an LLM model is configured for the rewrite proposer."""
        return bool(self.llm_model)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
