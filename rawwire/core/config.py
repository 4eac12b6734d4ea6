from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WEIGHTS = {
    "relevance": 30.0,
    "quality": 25.0,
    "timeliness": 20.0,
    "uniqueness": 15.0,
    "engagement": 10.0,
}


class Settings(BaseSettings):
    app_name: str = "rawwire-core"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    api_credentials_json: str | None = None

    scoring_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    keywords_primary: list[str] = Field(default_factory=list)
    keywords_secondary: list[str] = Field(default_factory=list)
    campaign_niche: str = "news and regulatory content"
    campaign_audience: str = "general readers"
    accept_threshold: int = 60
    recommend_approve_at: int = 70
    recommend_review_at: int = 40
    top_per_source: int = 2

    generation_endpoint: str | None = None
    generation_api_key: str | None = None
    generation_model: str | None = None
    semantic_chunk_size: int = 5
    semantic_timeout_seconds: float = 60.0
    semantic_disable_seconds: float = 300.0

    retry_queue_max_attempts: int = 3
    retry_queue_base_seconds: int = 30
    retry_queue_max_seconds: int = 600
    retry_queue_batch_size: int = 20
    retry_queue_interval_seconds: float = 30.0

    pipeline_max_execution_seconds: float = 30.0
    pipeline_step_retry_attempts: int = 3
    pipeline_step_retry_base_seconds: float = 0.2
    pipeline_http_timeout_seconds: float = 30.0
    pipeline_strict_interpolation: bool = False
    pipeline_worker_concurrency: int = 2
    pipeline_definitions_json: str | None = None

    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    background_workers_enabled: bool = False

    otel_enabled: bool = True
    otel_service_name: str = "rawwire-core"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RAWWIRE_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
