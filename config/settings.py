"""
agewage settings.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AGEWAGE_",
        extra="ignore",
    )

    # Directories
    project_root: Path = Field(
        default_factory=lambda: Path(__file__).parent.parent,
        description="Project root directory",
    )
    data_dir: Path = Field(default=Path("data"), description="Data directory")
    variable_map_path: Path = Field(
        default_factory=lambda: Path(__file__).parent / "variable_map.yaml",
        description="Canonical variable synonym table",
    )
    policy_events_path: Path = Field(
        default_factory=lambda: Path(__file__).parent / "policy_events.yaml",
        description="Ordered policy event table",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Survey coverage
    survey_start_year: int = Field(default=2012, description="First survey year to include")
    survey_end_year: int = Field(default=2024, description="Last survey year to include")
    quarters_per_wave: int = Field(default=5, description="Quarters observed per rotating wave")
    date_format: str = Field(default="%d/%m/%Y", description="Reference date format (day-month-year)")
    period_freq: str = Field(default="Q", description="Calendar period frequency: Q or M")
    dedup_policy: str = Field(
        default="none",
        description="Cross-wave deduplication: none | person_period",
    )

    # Age windows
    min_age: int = Field(default=16, description="Youngest age kept in the panel")
    max_age: int = Field(default=64, description="Oldest age kept in the panel")

    # Estimation limits
    max_fe_levels: int = Field(
        default=2_000_000, description="Maximum total absorbed fixed-effect levels"
    )
    max_design_cells: int = Field(
        default=200_000_000, description="Maximum n_obs * n_regressors per fit"
    )
    absorb_tol: float = Field(default=1e-10, description="Alternating projection tolerance")
    absorb_max_iter: int = Field(default=1000, description="Alternating projection iteration cap")
    max_condition_number: float = Field(
        default=1e12, description="Condition number above which a covariance is unreliable"
    )

    # Event study
    event_reference: int = Field(default=-1, description="Omitted relative period")
    event_window_min: int = Field(default=-8, description="First event-time bucket (binned)")
    event_window_max: int = Field(default=8, description="Last event-time bucket (binned)")

    # RDD
    rdd_kernel: str = Field(default="triangular", description="triangular | epanechnikov | uniform")
    rdd_order: int = Field(default=1, description="Local polynomial order")
    rdd_bandwidth: str = Field(default="rot", description="Bandwidth rule: rot | cv")

    @property
    def raw_data_dir(self) -> Path:
        return self.data_dir / "raw"

    @property
    def processed_data_dir(self) -> Path:
        return self.data_dir / "processed"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
