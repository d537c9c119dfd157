import pytest
from pydantic import ValidationError

from programme_scout.core.config import ScraperConfig, Settings, get_settings


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PS_MAX_PAGES", "3")
    monkeypatch.setenv("PS_API_KEY", "review-key")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.max_pages == 3
        assert settings.api_key == "review-key"
    finally:
        get_settings.cache_clear()


def test_scraper_config_starts_from_settings() -> None:
    config = ScraperConfig.from_settings(Settings(max_roles=7, detail_concurrency=2))
    assert config.max_roles == 7
    assert config.detail_concurrency == 2
    assert config.max_pages == 10


def test_merged_accepts_camel_case_keys_and_ignores_unknown_ones() -> None:
    config = ScraperConfig().merged({"maxPages": 2, "extractionModel": "gpt-4o", "max_roles": None, "colour": "blue"})
    assert config.max_pages == 2
    assert config.extraction_model == "gpt-4o"
    assert config.max_roles == 50


def test_merged_without_overrides_returns_same_config() -> None:
    config = ScraperConfig(max_pages=4)
    assert config.merged(None) is config
    assert config.merged({}) is config


def test_merged_rejects_out_of_range_and_non_object_configs() -> None:
    with pytest.raises(ValidationError):
        ScraperConfig().merged({"maxPages": 0})
    with pytest.raises(TypeError):
        ScraperConfig().merged(["maxPages", 2])  # type: ignore[arg-type]
