from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SIGNIFICANT_FIELD_PATTERNS = [
    "salary",
    "salary.*",
    "*.salary.*",
    "*wage*",
    "hours",
    "hours.*",
    "*.hours.*",
    "*hours_per_week*",
    "contract",
    "contract.*",
    "*.contract.*",
    "*contract_duration*",
    "*start_date",
    "*end_date",
    "status",
    "*.status",
    "position*",
    "*.position*",
    "department*",
    "*.department*",
    "cao.*",
    "*.scale",
    "*.trede",
]

DEFAULT_INSIGNIFICANT_FIELD_PATTERNS = [
    "*last_verified_at*",
    "*updated_at*",
    "*synced_at*",
    "*etag*",
    "_links.*",
    "*._links.*",
]

DEFAULT_AUTHORITATIVE_LOCAL_FIELDS = [
    "salary.gross_monthly",
    "salary.hourly_wage",
    "hours.per_week",
    "contract.start_date",
    "contract.end_date",
    "contract.type",
]

DEFAULT_PROVIDER_ENDPOINTS = ["/employee", "/employments", "/salary-history", "/contracts", "/hours"]


class Settings(BaseSettings):
    app_name: str = "employment-ledger-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    storage_backend: str = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    module_credentials_json: str | None = None
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    job_default_lease_seconds: int = 120
    job_starvation_max_age_seconds: int = 3600
    job_starvation_priority: int = 100
    session_max_runtime_seconds: int = 6 * 3600
    ingest_max_chain_retries: int = 3
    confidence_retry_penalty: float = 0.1
    confidence_partial_penalty: float = 0.3
    confidence_floor: float = 0.5
    numeric_tolerance: float = 0.01
    change_duplicate_window_seconds: int = 3600
    timeline_collapse_window_seconds: int = 3600
    contract_chain_threshold: int = 3
    conflict_escalation_hours: int = 72
    significant_field_patterns: list[str] = DEFAULT_SIGNIFICANT_FIELD_PATTERNS
    insignificant_field_patterns: list[str] = DEFAULT_INSIGNIFICANT_FIELD_PATTERNS
    authoritative_local_fields: list[str] = DEFAULT_AUTHORITATIVE_LOCAL_FIELDS
    provider_endpoints: list[str] = DEFAULT_PROVIDER_ENDPOINTS
    cao_salary_table_json: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "employment-ledger-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="EL_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
