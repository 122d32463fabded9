"""Tests for configuration loading."""

from __future__ import annotations

from polydoc.config import PolydocConfig, config_from_env


def test_defaults() -> None:
    cfg = PolydocConfig()
    assert cfg.database_name == "default"
    assert cfg.contention_max_attempts == 5
    assert cfg.contention_retry_delay_s == 5.0
    assert cfg.auto_sort_arrays is False


def test_config_from_env_parses_types() -> None:
    cfg = config_from_env(
        {
            "POLYDOC_DATABASE_NAME": "app",
            "POLYDOC_CONTENTION_MAX_ATTEMPTS": "7",
            "POLYDOC_CONTENTION_RETRY_DELAY_S": "0.5",
            "POLYDOC_AUTO_SORT_ARRAYS": "yes",
            "POLYDOC_AUTO_CONVERT_ROUNDABLE_FLOAT_TO_INT": "0",
            "POLYDOC_DYNAMODB_REGION": "eu-west-1",
        }
    )
    assert cfg.database_name == "app"
    assert cfg.contention_max_attempts == 7
    assert cfg.contention_retry_delay_s == 0.5
    assert cfg.auto_sort_arrays is True
    assert cfg.auto_convert_roundable_float_to_int is False
    assert cfg.dynamodb_region == "eu-west-1"


def test_config_from_env_ignores_empty_and_unknown_values() -> None:
    cfg = config_from_env({"POLYDOC_DATABASE_NAME": "", "POLYDOC_NOT_A_FIELD": "x"})
    assert cfg == PolydocConfig()


def test_config_from_env_reads_process_environment(monkeypatch) -> None:
    monkeypatch.setenv("POLYDOC_MUTEX_TTL_S", "12")
    assert config_from_env().mutex_ttl_s == 12.0
