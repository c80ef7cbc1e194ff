"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "abengine"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./abengine.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    use_redis: bool = False  # Redis-backed cache and interval gate (multi-instance deployments)

    # Experiment validation
    min_sample_size: int = 100
    default_confidence_level: float = 0.95

    # Analysis
    minimum_detectable_effect: float = 0.1  # relative lift the sample size estimate targets
    min_run_hours: int = 24  # winners found earlier are reported as preliminary

    # Allocation optimizer
    reallocation_interval_seconds: int = 3600  # minimum time between reallocations per experiment
    scheduler_poll_seconds: int = 300
    epsilon: float = 0.1
    ucb_exploration_factor: float = 2.0
    smoothing_factor: float = 0.3
    min_variant_weight: float = 5.0  # percent, keeps every arm exploring

    # Caching
    experiment_cache_ttl_seconds: int = 60

    # Feature flags - JSON list of flag definitions loaded at startup
    feature_flags_path: Optional[str] = None

    # Randomness - leave unset in production
    random_seed: Optional[int] = None

    # CORS
    frontend_url: str = "http://localhost:5173"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
