from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    worker_id: str = "local-worker"
    api_key: str = "local-worker-key"
    cron_secret: str | None = None
    http_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 300
    stale_sweep_interval_seconds: float = 300.0
    dispatch_reap_interval_seconds: float = 30.0
    dispatch_reap_batch_size: int = 100
    handled_stages: list[str] = ["reconcile"]
    reconcile_batch_size: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "brickyard-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BY_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
