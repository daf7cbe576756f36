"""
Tests for fail-fast configuration validation.
"""

import pytest

from app.config import ConfigurationError, Settings


def make_settings(**overrides) -> Settings:
    values = {"database_url": "postgresql+asyncpg://u:p@localhost/db"}
    values.update(overrides)
    return Settings(**values)


def test_defaults_are_valid() -> None:
    settings = make_settings()

    assert settings.unit_price_minor == 20
    assert settings.currency == "eur"
    assert settings.quota_policy == "free_first"
    assert settings.session_early_revocation is False


@pytest.mark.parametrize(
    "overrides",
    [
        {"database_url": ""},
        {"database_url": "mysql://u:p@localhost/db"},
        {"unit_price_minor": 0},
        {"currency": "euro"},
        {"free_pool_limit": -1},
        {"quota_policy": "random"},
        {"ledger_max_attempts": 0},
        {"session_ttl_seconds": 30},
    ],
)
def test_invalid_config_fails_fast(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        make_settings(**overrides)


def test_session_must_outlive_pipeline() -> None:
    settings = make_settings(
        completion_timeout_seconds=10,
        evidence_search_timeout_seconds=10,
        evidence_fetch_timeout_seconds=10,
        session_ttl_seconds=101,
    )
    assert settings.pipeline_budget_seconds == 100
    assert settings.session_ttl_seconds > settings.pipeline_budget_seconds


def test_session_ttl_equal_to_pipeline_budget_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        make_settings(
            completion_timeout_seconds=10,
            evidence_search_timeout_seconds=10,
            evidence_fetch_timeout_seconds=10,
            session_ttl_seconds=100,
        )
