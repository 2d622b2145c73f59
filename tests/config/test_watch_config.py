from pathlib import Path

import pytest

from querywatch.config import DEFAULT_EXCLUDE_PATTERNS, NPlusOneConfig, WatchConfig
from querywatch.errors import ConfigurationError


def test_defaults():
    config = WatchConfig()
    assert config.slow_threshold_ms == 100.0
    assert config.n_plus_one.threshold == 3
    assert config.n_plus_one.time_window_ms == 100.0
    assert config.sampling == 100
    assert config.connections == ("*",)
    assert config.storage.retention_days == 7
    assert config.backtrace.limit == 10
    assert config.alerts.conditions.query_count_threshold == 50
    assert config.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS


def test_invalid_regex_fails_at_construction():
    with pytest.raises(ConfigurationError) as exc:
        WatchConfig(exclude_patterns=("(unclosed",))
    assert "(unclosed" in str(exc.value)


@pytest.mark.parametrize(
    "overrides",
    [
        {"sampling": 0},
        {"sampling": 101},
        {"slow_threshold_ms": -1},
        {"n_plus_one": NPlusOneConfig(threshold=1)},
        {"n_plus_one": NPlusOneConfig(time_window_ms=0)},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ConfigurationError):
        WatchConfig(**overrides)


def test_webhook_channel_requires_url():
    with pytest.raises(ConfigurationError):
        WatchConfig.from_mapping({"alerts": {"enabled": True, "channels": ["webhook"]}})


def test_exclusion_and_connection_helpers():
    config = WatchConfig(connections=("primary", "reporting"))
    assert config.tracks_connection("primary")
    assert not config.tracks_connection("replica")
    assert WatchConfig().tracks_connection("anything")

    assert config.is_excluded("SHOW FULL COLUMNS FROM users")
    assert config.is_excluded("select * from migrations")
    assert config.is_excluded("SELECT name FROM sqlite_master WHERE type = 'table'")
    assert not config.is_excluded("SELECT * FROM users")


def test_with_overrides_revalidates():
    config = WatchConfig()
    assert config.with_overrides(sampling=50).sampling == 50
    with pytest.raises(ConfigurationError):
        config.with_overrides(exclude_patterns=("[",))


def test_from_mapping_builds_nested_sections():
    config = WatchConfig.from_mapping(
        {
            "slow_threshold_ms": 250,
            "connections": ["primary"],
            "n_plus_one": {"threshold": 5, "time_window_ms": 500},
            "alerts": {"enabled": True, "channels": ["log"], "conditions": {"query_count_threshold": 10}},
            "storage": {"path": "/tmp/qw", "retention_days": 3},
        }
    )
    assert config.slow_threshold_ms == 250
    assert config.connections == ("primary",)
    assert config.n_plus_one.threshold == 5
    assert config.alerts.channels == ("log",)
    assert config.alerts.conditions.query_count_threshold == 10
    assert config.storage.path == Path("/tmp/qw")


@pytest.mark.parametrize("data", [{"slow_threshold": 10}, {"storage": {"size": 1}}])
def test_from_mapping_rejects_unknown_keys(data):
    with pytest.raises(ConfigurationError):
        WatchConfig.from_mapping(data)


def test_from_env_reads_prefixed_variables(tmp_path):
    env = {
        "QUERYWATCH_ENABLED": "true",
        "QUERYWATCH_CONNECTIONS": "primary, replica",
        "QUERYWATCH_SLOW_THRESHOLD": "75.5",
        "QUERYWATCH_SAMPLING": "25",
        "QUERYWATCH_N_PLUS_ONE_THRESHOLD": "4",
        "QUERYWATCH_N_PLUS_ONE_WINDOW": "250",
        "QUERYWATCH_ALERTS": "yes",
        "QUERYWATCH_ALERT_CHANNELS": "log,webhook",
        "QUERYWATCH_WEBHOOK_URL": "https://hooks.example.com/x",
        "QUERYWATCH_STORAGE_PATH": str(tmp_path),
        "QUERYWATCH_MAX_FILE_SIZE": "2",
        "QUERYWATCH_RETENTION_DAYS": "14",
        "QUERYWATCH_BACKTRACE_LIMIT": "5",
        "QUERYWATCH_EXCLUDE_PATTERNS": r"^SELECT 1$",
        "QUERYWATCH_INJECT_RESPONSE": "1",
    }
    config = WatchConfig.from_env(environ=env)

    assert config.enabled is True
    assert config.connections == ("primary", "replica")
    assert config.slow_threshold_ms == 75.5
    assert config.sampling == 25
    assert config.n_plus_one.threshold == 4
    assert config.n_plus_one.time_window_ms == 250.0
    assert config.alerts.enabled is True
    assert config.alerts.channels == ("log", "webhook")
    assert config.storage.path == tmp_path
    assert config.storage.max_file_size_bytes == 2 * 1024 * 1024
    assert config.storage.retention_days == 14
    assert config.backtrace.limit == 5
    assert config.exclude_patterns == (r"^SELECT 1$",)
    assert config.response.inject is True


def test_from_env_defaults_to_disabled():
    config = WatchConfig.from_env(environ={})
    assert config.enabled is False
    assert config.plan.analyze_queries is True


@pytest.mark.parametrize(
    "name, value",
    [("QUERYWATCH_ENABLED", "maybe"), ("QUERYWATCH_SAMPLING", "ten"), ("QUERYWATCH_SLOW_THRESHOLD", "fast")],
)
def test_from_env_rejects_invalid_values(name, value):
    with pytest.raises(ConfigurationError):
        WatchConfig.from_env(environ={name: value})


def test_from_env_uses_os_environ(monkeypatch):
    monkeypatch.setenv("QW_ENABLED", "on")
    monkeypatch.setenv("QW_SLOW_THRESHOLD", "20")
    config = WatchConfig.from_env(prefix="QW_")
    assert config.enabled is True
    assert config.slow_threshold_ms == 20.0
