from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "hareline-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    default_trust_level: int = 5
    scrape_window_days: int = 90
    health_baseline_runs: int = 10
    health_failure_window: int = 3
    max_merge_errors: int = 50
    max_diagnostic_samples: int = 3
    reconcile_enabled: bool = True
    otel_enabled: bool = True
    otel_service_name: str = "hareline-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HARELINE_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
