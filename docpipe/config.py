"""Configuration module for the document analysis pipeline.

Every tunable of the scheduler and of the analysis client is exposed here
rather than hard-coded; strategy thresholds, the attempt ceiling and the model
list are deployment decisions, not protocol.

Environment variables (selection):
 - OPENAI_API_KEY (plain value or ``sm://`` Secret Manager reference)
 - ANALYSIS_MODELS (comma separated, tried in order)
 - MAX_CONCURRENT_JOBS / MAX_ATTEMPTS / RECOVERY_INTERVAL_SECONDS
 - COMPACT_THRESHOLD_BYTES / TEXT_EXTRACTION_THRESHOLD_BYTES
 - DOCUMENT_STORE_BACKEND (memory | gcs) + DOCUMENT_STORE_BUCKET
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from docpipe.utils.secrets import resolve_secret

DEFAULT_MODELS = "gpt-4.1-mini,gpt-4o-mini,gpt-4.1,gpt-4o"
_PLACEHOLDER_KEYS = {"your_openai_api_key_here", "changeme", "sk-xxx"}


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


class AppConfig(BaseSettings):
    project_id: str = Field('', validation_alias=AliasChoices('PROJECT_ID', 'GOOGLE_CLOUD_PROJECT'))
    openai_api_key: str | None = Field(None, validation_alias='OPENAI_API_KEY')
    analysis_models_raw: str = Field(DEFAULT_MODELS, validation_alias='ANALYSIS_MODELS')
    analysis_temperature: float = Field(0.1, validation_alias='ANALYSIS_TEMPERATURE')
    # Large PDFs routinely take minutes on the provider side.
    analysis_request_timeout: float = Field(210.0, validation_alias='ANALYSIS_REQUEST_TIMEOUT')

    # Scheduler
    max_concurrent_jobs: int = Field(3, validation_alias='MAX_CONCURRENT_JOBS')
    max_attempts: int = Field(3, validation_alias='MAX_ATTEMPTS')
    recovery_interval_seconds: float = Field(30.0, validation_alias='RECOVERY_INTERVAL_SECONDS')
    requeue_delay_seconds: float = Field(5.0, validation_alias='REQUEUE_DELAY_SECONDS')

    # Strategy tiers
    compact_threshold_bytes: int = Field(2 * 1024 * 1024, validation_alias='COMPACT_THRESHOLD_BYTES')
    text_extraction_threshold_bytes: int = Field(
        5 * 1024 * 1024, validation_alias='TEXT_EXTRACTION_THRESHOLD_BYTES'
    )
    max_extracted_chars: int = Field(50_000, validation_alias='MAX_EXTRACTED_CHARS')
    max_input_bytes: int = Field(50 * 1024 * 1024, validation_alias='MAX_INPUT_BYTES')
    image_max_dimension: int = Field(2000, validation_alias='IMAGE_MAX_DIMENSION')
    image_jpeg_quality: int = Field(90, validation_alias='IMAGE_JPEG_QUALITY')

    # Per-model retry loop (rate limits / transient provider errors)
    model_retry_attempts: int = Field(3, validation_alias='MODEL_RETRY_ATTEMPTS')
    rate_limit_backoff_seconds: float = Field(20.0, validation_alias='RATE_LIMIT_BACKOFF_SECONDS')
    rate_limit_backoff_max_seconds: float = Field(60.0, validation_alias='RATE_LIMIT_BACKOFF_MAX_SECONDS')

    upload_fallback_dir: str | None = Field(None, validation_alias='UPLOAD_FALLBACK_DIR')

    document_store_backend: str = Field('memory', validation_alias='DOCUMENT_STORE_BACKEND')
    document_store_bucket: str | None = Field(None, validation_alias='DOCUMENT_STORE_BUCKET')
    document_store_prefix: str = Field('document-records', validation_alias='DOCUMENT_STORE_PREFIX')

    enable_metrics_raw: str | bool | None = Field(True, validation_alias='ENABLE_METRICS')

    model_config = SettingsConfigDict(env_file='.env', extra='ignore', case_sensitive=False)

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        """Resolve ``sm://`` references once the raw values are loaded."""
        resolved = resolve_secret(self.openai_api_key, project_id=self.project_id or None)
        if resolved is not None:
            self.openai_api_key = resolved.strip()

    @property
    def analysis_models(self) -> list[str]:
        return parse_csv(self.analysis_models_raw)

    @property
    def enable_metrics(self) -> bool:
        raw = self.enable_metrics_raw
        if isinstance(raw, bool):
            return raw
        return parse_bool(str(raw))

    def validate_required(self) -> None:
        key = (self.openai_api_key or "").strip()
        if not key or key.lower() in _PLACEHOLDER_KEYS:
            raise RuntimeError("OPENAI_API_KEY must be configured")
        if not self.analysis_models:
            raise RuntimeError("ANALYSIS_MODELS must list at least one model")
        if self.max_concurrent_jobs < 1:
            raise RuntimeError("MAX_CONCURRENT_JOBS must be >= 1")
        if self.max_attempts < 1:
            raise RuntimeError("MAX_ATTEMPTS must be >= 1")
        if self.compact_threshold_bytes >= self.text_extraction_threshold_bytes:
            raise RuntimeError(
                "COMPACT_THRESHOLD_BYTES must be smaller than TEXT_EXTRACTION_THRESHOLD_BYTES"
            )
        backend = self.document_store_backend.strip().lower()
        if backend not in {"memory", "gcs"}:
            raise RuntimeError(f"Unknown DOCUMENT_STORE_BACKEND: {self.document_store_backend}")
        if backend == "gcs" and not self.document_store_bucket:
            raise RuntimeError("DOCUMENT_STORE_BUCKET required when DOCUMENT_STORE_BACKEND=gcs")


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = ["AppConfig", "get_config", "parse_bool", "parse_csv"]
