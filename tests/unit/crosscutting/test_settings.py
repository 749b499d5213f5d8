"""
Name: Settings Tests

Responsibilities:
  - Defaults and normalization of enum-like strings
  - Validation errors for weights, fractions, providers and storage
"""

import pytest
from pydantic import ValidationError

from rag_engine.crosscutting.config import Settings, get_settings

pytestmark = pytest.mark.unit

_PROVIDER_ENV = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "SELF_HOSTED_BASE_URL",
    "PROVIDER_PROFILES_JSON",
)


def _settings(**overrides) -> Settings:
    values = {"fake_providers": True}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_defaults():
    settings = _settings()

    assert settings.semantic_weight == 0.7
    assert settings.lexical_weight == 0.3
    assert settings.chunk_store == "memory"
    assert settings.query_deadline_seconds == 30.0
    assert settings.provider_timeout_seconds < settings.query_deadline_seconds
    assert not settings.is_production()


def test_session_env_carries_no_provider_credentials():
    """R: Keys exported in the developer shell are cleared before settings load."""
    settings = _settings()

    assert settings.openai_api_key == ""
    assert settings.anthropic_api_key == ""
    assert settings.google_api_key == ""
    assert settings.self_hosted_base_url == ""


@pytest.mark.parametrize(
    "field,raw,expected",
    [
        ("combine_mode", " RRF ", "rrf"),
        ("rerank_mode", "Heuristic", "heuristic"),
        ("assembly_strategy", "QUALITY", "quality"),
        ("citation_style", "Footnote", "footnote"),
        ("chunk_store", "Memory", "memory"),
    ],
)
def test_choices_are_normalized(field, raw, expected):
    assert getattr(_settings(**{field: raw}), field) == expected


@pytest.mark.parametrize(
    "overrides",
    [
        {"combine_mode": "max"},
        {"rerank_mode": "always"},
        {"assembly_strategy": "random"},
        {"citation_style": "apa"},
        {"chunk_store": "sqlite"},
        {"semantic_weight": -0.1},
        {"semantic_weight": 0.0, "lexical_weight": 0.0},
        {"search_deadline_fraction": 1.0},
        {"rerank_deadline_fraction": 0.0},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValidationError):
        _settings(**overrides)


def test_provider_required_without_fakes(monkeypatch):
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(ValidationError, match="At least one provider"):
        _settings(fake_providers=False)


def test_any_single_provider_is_enough(monkeypatch):
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)

    settings = _settings(fake_providers=False, anthropic_api_key="sk-ant-test")

    assert settings.anthropic_api_key == "sk-ant-test"


def test_postgres_requires_database_url():
    with pytest.raises(ValidationError, match="DATABASE_URL"):
        _settings(chunk_store="postgres", database_url="")

    settings = _settings(chunk_store="postgres", database_url="postgresql://u:p@db/rag")
    assert settings.chunk_store == "postgres"


def test_split_list():
    assert Settings.split_list(" mini, ,haiku ,") == ("mini", "haiku")
    assert Settings.split_list("") == ()


def test_environment_variables_are_read(monkeypatch):
    monkeypatch.setenv("SEMANTIC_WEIGHT", "0.5")
    monkeypatch.setenv("APP_ENV", "Production")

    settings = get_settings()

    assert settings.semantic_weight == 0.5
    assert settings.is_production()
    assert get_settings() is settings
