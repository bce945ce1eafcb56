"""
Configuration settings for the DBS workflow.
Uses pydantic-settings for type-safe configuration management.

Settings are read once, but nothing in the pipeline reads them implicitly:
each component receives the sub-settings it needs at construction, so two
pipeline runs in the same process never interfere with each other.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class DataSettings(BaseSettings):
    """Input dataset configuration."""
    model_config = SettingsConfigDict(env_prefix="DATA_")

    path: str = Field(default="./data/dat_ishak2007.csv", description="Wide-format dataset path")
    study_column: str = Field(default="study", description="Original study identifier column")


class SamplingSettings(BaseSettings):
    """MCMC sampling configuration."""
    model_config = SettingsConfigDict(env_prefix="SAMPLING_")

    chains: int = Field(default=4, ge=1, description="Number of parallel chains")
    draws: int = Field(default=1000, ge=1, description="Posterior draws per chain")
    tune: int = Field(default=1000, ge=0, description="Tuning iterations per chain")
    target_accept: float = Field(default=0.9, gt=0.0, lt=1.0, description="NUTS acceptance target")
    cores: Optional[int] = Field(default=None, description="Processes for chains (None = PyMC default)")
    random_seed: Optional[int] = Field(default=2024, description="Base random seed")
    escalation: str = Field(
        default="0.95,0.99",
        description="Comma-separated acceptance targets tried after an unreliable or failed fit"
    )

    @property
    def escalation_list(self) -> list[float]:
        """Parse escalation schedule into floats."""
        return [float(v.strip()) for v in self.escalation.split(",") if v.strip()]


class DiagnosticsSettings(BaseSettings):
    """Convergence and model-checking thresholds."""
    model_config = SettingsConfigDict(env_prefix="DIAGNOSTICS_")

    rhat_tolerance: float = Field(default=0.01, gt=0.0, description="Allowed |R-hat - 1|")
    max_divergences: int = Field(default=0, ge=0, description="Allowed divergent transitions")
    pareto_k_threshold: float = Field(default=0.7, description="Pareto k above which an observation is flagged")
    sensitivity_delta: float = Field(default=0.01, gt=0.0, description="Power-scaling perturbation")
    sensitivity_threshold: float = Field(default=0.05, gt=0.0, description="Power-scaling diagnosis threshold")
    interval: float = Field(default=0.9, gt=0.0, lt=1.0, description="Central interval for summaries")

    @field_validator("pareto_k_threshold")
    @classmethod
    def _positive_threshold(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("pareto_k_threshold must be positive")
        return value


class CacheSettings(BaseSettings):
    """Fitted-artifact cache configuration."""
    model_config = SettingsConfigDict(env_prefix="CACHE_")

    enabled: bool = Field(default=True, description="Reuse fitted artifacts across runs")
    directory: str = Field(default="./.dbs_cache", description="Cache directory")


class Settings(BaseSettings):
    """Main settings class combining all configurations."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    project_name: str = Field(default="DBS Workflow", description="Project name")
    version: str = Field(default="1.0.0", description="Project version")
    n_workers: int = Field(default=1, ge=1, description="Model variants fitted concurrently")
    output_dir: str = Field(default="./output", description="Reports and figures")

    data: DataSettings = Field(default_factory=DataSettings)
    sampling: SamplingSettings = Field(default_factory=SamplingSettings)
    diagnostics: DiagnosticsSettings = Field(default_factory=DiagnosticsSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
