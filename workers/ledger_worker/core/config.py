from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "ledger-worker"
    api_key: str = "ledger-worker-key"
    worker_id: str | None = None
    api_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 120
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    starvation_sweep_interval_seconds: float = 60.0
    starvation_sweep_batch_size: int = 100
    session_expiry_interval_seconds: float = 300.0
    provider_base_url: str = "https://connect.employes.nl/v4"
    provider_company_id: str = ""
    provider_api_key: str = ""
    provider_timeout_seconds: float = 15.0
    provider_page_size: int = 100
    provider_max_pages: int = 500
    otel_enabled: bool = True
    otel_service_name: str = "employment-ledger-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="EL_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
