from functools import lru_cache
from typing import Any

from pydantic import RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "GitHub Explorer Pipeline"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database (postgresql+asyncpg:// in production, sqlite+aiosqlite:// for local runs)
    database_url: str
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Redis
    redis_url: RedisDsn

    # GitHub API
    github_token: str | None = None
    github_api_base_url: str = "https://api.github.com"
    github_api_version: str = "2022-11-28"
    request_concurrency: int = 5
    request_timeout_seconds: float = 30.0

    # Retry budgets
    primary_rate_limit_retries: int = 2
    secondary_rate_limit_retries: int = 1
    server_error_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    default_rate_limit_wait_seconds: float = 60.0
    max_rate_limit_wait_seconds: float = 900.0

    # Sync & enrichment
    tracked_repositories: list[str] = []
    sync_max_pages: int = 5
    sync_page_size: int = 100
    max_enrichment_attempts: int = 3
    enrichment_batch_size: int = 100
    enrichment_concurrency: int = 5

    # Repository statistics
    core_contributor_threshold: float = 0.5
    growth_windows_days: list[int] = [7, 30, 90]
    health_weights: dict[str, float] = {
        "recency": 0.30,
        "diversity": 0.25,
        "responsiveness": 0.20,
        "cadence": 0.25,
    }

    # Contributor ranking weights
    ranking_weights: dict[str, float] = {
        "code_volume": 0.05,
        "commit_impact": 0.10,
        "code_efficiency": 0.15,
        "collaboration": 0.20,
        "repo_popularity": 0.20,
        "repo_influence": 0.10,
        "followers": 0.15,
        "profile_completeness": 0.05,
    }

    # Job processing
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    job_default_timeout: int = 3600  # 1 hour
    schedule_check_interval_seconds: float = 60.0

    # API settings
    api_pagination_default_limit: int = 50
    api_pagination_max_limit: int = 100

    @field_validator("celery_broker_url", "celery_result_backend", mode="before")
    @classmethod
    def set_celery_urls(cls, v: str | None, info: Any) -> str | None:
        if v is None and "redis_url" in info.data:
            return str(info.data["redis_url"])
        return v

    @field_validator("core_contributor_threshold")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("core_contributor_threshold must be in (0, 1]")
        return v

    @field_validator("ranking_weights", "health_weights")
    @classmethod
    def check_weights(cls, v: dict[str, float], info: Any) -> dict[str, float]:
        if not v:
            raise ValueError(f"{info.field_name} must not be empty")
        negative = sorted(name for name, weight in v.items() if weight < 0)
        if negative:
            raise ValueError(f"{info.field_name} has negative weights: {', '.join(negative)}")
        if sum(v.values()) <= 0:
            raise ValueError(f"{info.field_name} must have a positive total")
        return v


def with_overrides(base: Settings, overrides: dict[str, Any] | None) -> Settings:
    """A validated copy of ``base`` with some fields replaced, e.g. by a schedule."""
    if not overrides:
        return base
    unknown = sorted(set(overrides) - set(Settings.model_fields))
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")
    return Settings.model_validate({**base.model_dump(mode="json"), **overrides})


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
