from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "pagebridge"
    environment: str = "dev"
    api_key: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    sanity_project_id: str | None = None
    sanity_dataset: str = "production"
    sanity_token: str | None = None
    sanity_api_version: str = "2024-01-01"
    sanity_timeout_seconds: float = 30.0
    google_service_account_json: str | None = None
    google_service_account_path: str | None = None
    gsc_row_limit: int = 25000
    site_urls: list[str] = []
    site_base_url: str | None = None
    default_content_types: list[str] = ["post", "page"]
    default_slug_field: str = "slug"
    default_path_prefix: str | None = None
    sync_lookback_days: int = 90
    sync_lag_days: int = 3
    write_batch_size: int = 500
    quiet_period_enabled: bool = True
    quiet_period_days: int = 45
    index_status_enabled: bool = False
    index_status_cache_hours: int = 24
    sync_interval_seconds: float = 86400.0
    max_backoff_seconds: float = 900.0
    otel_enabled: bool = True
    otel_service_name: str = "pagebridge"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
