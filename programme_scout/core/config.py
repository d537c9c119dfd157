from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "programme-scout"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    api_key_header: str = "X-API-Key"
    api_key: str | None = None
    openai_api_key: str | None = None
    openai_timeout_seconds: float = 60.0
    llm_max_attempts: int = 3
    llm_backoff_seconds: float = 1.0
    llm_max_backoff_seconds: float = 10.0
    link_classification_model: str = "gpt-4o-mini"
    programme_suggestion_model: str = "gpt-4o-mini"
    max_pages: int = 10
    max_roles: int = 50
    max_scrolls: int = 5
    extraction_model: str = "gpt-4o-mini"
    detail_concurrency: int = 3
    detail_timeout_seconds: float = 120.0
    run_timeout_seconds: float = 1800.0
    browser_headless: bool = True
    poll_interval_seconds: float = 30.0
    max_backoff_seconds: float = 300.0
    scan_batch_size: int = 5
    scan_interval_hours: int = 24
    otel_enabled: bool = True
    otel_service_name: str = "programme-scout"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PS_", extra="ignore")


_LEGACY_KEYS = {
    "maxPages": "max_pages",
    "maxRoles": "max_roles",
    "maxScrolls": "max_scrolls",
    "extractionModel": "extraction_model",
}


@lru_cache
def get_settings() -> Settings:
    return Settings()


class ScraperConfig(BaseModel):
    """Per-run crawl limits; every field has a default so callers override only what they need."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    max_pages: int = Field(default=10, ge=1)
    max_roles: int = Field(default=50, ge=0)
    max_scrolls: int = Field(default=5, ge=0)
    extraction_model: str = "gpt-4o-mini"
    detail_concurrency: int = Field(default=3, ge=1)
    detail_timeout_seconds: float = Field(default=120.0, gt=0)
    run_timeout_seconds: float = Field(default=1800.0, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> ScraperConfig:
        return cls(
            max_pages=settings.max_pages,
            max_roles=settings.max_roles,
            max_scrolls=settings.max_scrolls,
            extraction_model=settings.extraction_model,
            detail_concurrency=settings.detail_concurrency,
            detail_timeout_seconds=settings.detail_timeout_seconds,
            run_timeout_seconds=settings.run_timeout_seconds,
        )

    def merged(self, overrides: dict[str, Any] | None) -> ScraperConfig:
        if not overrides:
            return self
        if not isinstance(overrides, dict):
            raise TypeError(f"scraper config must be an object, got {type(overrides).__name__}")
        known: dict[str, Any] = {}
        for raw_key, value in overrides.items():
            key = _LEGACY_KEYS.get(raw_key, raw_key)
            if key in type(self).model_fields and value is not None:
                known[key] = value
        return type(self).model_validate({**self.model_dump(), **known})
