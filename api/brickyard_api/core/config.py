from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "brickyard-api"
    environment: str = "dev"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    stale_inactivity_minutes: int = 10
    stale_max_runtime_minutes: int = 60
    reject_unknown_job_types: bool = False
    cron_secret: str | None = None
    worker_api_key: str | None = None
    dispatch_wait_seconds: float = 2.0
    dispatch_lease_seconds: int = 300
    dispatch_max_attempts: int = 5
    reconcile_batch_size: int = 100
    catalog_lookup_page_size: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "brickyard-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BY_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
