from __future__ import annotations

import pytest

from pcstats_agent.common.config import (
    StoreBackend,
    load_agent_config,
    load_config_file,
    validate_config,
)
from pcstats_agent.common.exceptions import ConfigError


def test_defaults_match_agent_behaviour():
    config = load_agent_config({}, env={})

    assert config.monitoring.interval_seconds == 5.0
    assert config.monitoring.minimum_cpu_usage_percent == 5.0
    assert config.monitoring.minimum_private_memory_mb == 100
    assert config.cleanup.cleanup_interval_hours == 24
    assert config.cleanup.retention_days == 7
    assert config.offline_storage.enabled is True
    assert config.offline_storage.max_retention_days == 7
    assert config.offline_storage.max_restore_attempts == 3
    assert config.store.backend == StoreBackend.SQLITE
    assert config.health.port == 8095
    assert validate_config(config) == []


def test_environment_overrides_file_values():
    data = {
        "store": {"backend": "cloud", "url": "https://file.example", "api_key": "file-key"},
        "offline_storage": {"path": "/from/file"},
        "log_level": "INFO",
    }
    env = {
        "PCSTATS_STORE_URL": "https://env.example",
        "PCSTATS_STORE_KEY": "env-key",
        "PCSTATS_OFFLINE_DIR": "/from/env",
        "PCSTATS_LOG_LEVEL": "DEBUG",
    }

    config = load_agent_config(data, env=env)

    assert config.store.backend == StoreBackend.CLOUD
    assert config.store.url == "https://env.example"
    assert config.store.api_key == "env-key"
    assert config.offline_storage.path == "/from/env"
    assert config.log_level == "DEBUG"


def test_unknown_backend_is_rejected():
    with pytest.raises(ConfigError):
        load_agent_config({"store": {"backend": "mongodb"}}, env={})


def test_cloud_backend_requires_credentials():
    config = load_agent_config({"store": {"backend": "cloud"}}, env={})

    errors = validate_config(config)
    assert any("store.url" in e for e in errors)
    assert any("store.api_key" in e for e in errors)


def test_invalid_values_are_reported():
    config = load_agent_config(
        {
            "monitoring": {"interval_seconds": 0},
            "offline_storage": {"max_restore_attempts": 0},
            "health": {"port": 70000},
        },
        env={},
    )

    errors = validate_config(config)
    assert len(errors) == 3


def test_load_config_file(tmp_path, monkeypatch):
    for name in ("PCSTATS_STORE_URL", "PCSTATS_STORE_KEY", "PCSTATS_OFFLINE_DIR", "PCSTATS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    path = tmp_path / "config.yaml"
    path.write_text(
        "monitoring:\n  interval_seconds: 10\n  minimum_cpu_usage_percent: 2.5\n"
        f"offline_storage:\n  path: {tmp_path / 'queue'}\n",
        encoding="utf-8",
    )

    config = load_config_file(path)
    assert config.monitoring.interval_seconds == 10.0
    assert config.monitoring.minimum_cpu_usage_percent == 2.5
    assert config.offline_storage.path == str(tmp_path / "queue")


def test_missing_config_file_uses_defaults(tmp_path):
    config = load_config_file(tmp_path / "absent.yaml")
    assert config.monitoring.interval_seconds == 5.0


def test_malformed_config_file_raises(tmp_path):
    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("monitoring: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(bad_yaml)

    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(not_mapping)
