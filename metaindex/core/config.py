from datetime import timedelta
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "metaindex"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    admin_api_key_hashes: list[str] = []
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    ping_rate_limit_hits: int = 10
    ping_rate_limit_duration: timedelta = timedelta(hours=6)
    ping_valid_duration: timedelta = timedelta(days=7)
    ping_deny_list: list[str] = []
    retrieval_rate_limit_wait: timedelta = timedelta(minutes=10)
    retrieval_timeout: timedelta = timedelta(minutes=1)
    retrieval_max_redirects: int = 5
    retrieval_max_body_bytes: int = 512 * 1024
    auto_permit: bool = True
    webhook_urls: list[str] = []
    webhook_secret: str | None = None
    webhook_timeout: timedelta = timedelta(seconds=5)
    webhook_events: list[str] = []
    worker_concurrency: int = 4
    worker_queue_size: int = 1000
    recover_on_startup: bool = True
    log_level: str = "INFO"
    otel_enabled: bool = True
    otel_service_name: str = "metaindex"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="MI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
