"""
Configuration Dataclasses

Type-safe configuration structures for the agent.
Configuration is read from a YAML file; a few values can be
overridden through environment variables.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from .exceptions import ConfigError


def _default_data_dir() -> Path:
    """Base directory for agent data (queue, embedded store)"""
    if os.name == "nt":
        base = os.environ.get("PROGRAMDATA", r"C:\ProgramData")
        return Path(base) / "PCStats"
    return Path("/var/lib/pcstats")


class StoreBackend(str, Enum):
    """Supported store backends"""
    SQLITE = "sqlite"
    CLOUD = "cloud"


@dataclass
class MonitoringSettings:
    """Collection loop settings"""
    interval_seconds: float = 5.0
    # Processes meeting EITHER threshold are saved
    minimum_cpu_usage_percent: float = 5.0
    minimum_private_memory_mb: int = 100


@dataclass
class CleanupSettings:
    """Store-side retention"""
    enable_auto_cleanup: bool = True
    cleanup_interval_hours: float = 24
    retention_days: int = 7


@dataclass
class OfflineStorageSettings:
    """Local durable queue used while the store is unreachable"""
    enabled: bool = True
    path: str = field(default_factory=lambda: str(_default_data_dir() / "offline"))
    max_retention_days: int = 7
    max_restore_attempts: int = 3


@dataclass
class StoreSettings:
    """Backing store connection"""
    backend: StoreBackend = StoreBackend.SQLITE
    sqlite_path: str = field(default_factory=lambda: str(_default_data_dir() / "pcstats.db"))
    url: str = ""
    api_key: str = ""
    timeout_s: float = 30.0


@dataclass
class HealthSettings:
    """Local health/stats HTTP endpoint"""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8095


@dataclass
class AgentConfig:
    """Complete agent configuration"""
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)
    offline_storage: OfflineStorageSettings = field(default_factory=OfflineStorageSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    log_level: str = "INFO"


def load_agent_config(data: dict | None, env: dict | None = None) -> AgentConfig:
    """
    Load AgentConfig from a dictionary (e.g., parsed YAML).

    Environment overrides (PCSTATS_STORE_URL, PCSTATS_STORE_KEY,
    PCSTATS_OFFLINE_DIR, PCSTATS_LOG_LEVEL) win over file values.

    Args:
        data: Parsed configuration (None or empty means all defaults)
        env: Environment mapping (defaults to os.environ)

    Returns:
        AgentConfig
    """
    data = data or {}
    env = os.environ if env is None else env

    monitoring_data = data.get("monitoring", {}) or {}
    monitoring = MonitoringSettings(
        interval_seconds=float(monitoring_data.get("interval_seconds", 5.0)),
        minimum_cpu_usage_percent=float(monitoring_data.get("minimum_cpu_usage_percent", 5.0)),
        minimum_private_memory_mb=int(monitoring_data.get("minimum_private_memory_mb", 100)),
    )

    cleanup_data = data.get("cleanup", {}) or {}
    cleanup = CleanupSettings(
        enable_auto_cleanup=bool(cleanup_data.get("enable_auto_cleanup", True)),
        cleanup_interval_hours=float(cleanup_data.get("cleanup_interval_hours", 24)),
        retention_days=int(cleanup_data.get("retention_days", 7)),
    )

    offline_data = data.get("offline_storage", {}) or {}
    offline = OfflineStorageSettings(
        enabled=bool(offline_data.get("enabled", True)),
        max_retention_days=int(offline_data.get("max_retention_days", 7)),
        max_restore_attempts=int(offline_data.get("max_restore_attempts", 3)),
    )
    offline_path = env.get("PCSTATS_OFFLINE_DIR") or offline_data.get("path")
    if offline_path:
        offline.path = str(offline_path)

    store_data = data.get("store", {}) or {}
    try:
        backend = StoreBackend(store_data.get("backend", "sqlite"))
    except ValueError as e:
        raise ConfigError(f"Unknown store backend: {store_data.get('backend')!r}") from e
    store = StoreSettings(
        backend=backend,
        url=env.get("PCSTATS_STORE_URL") or store_data.get("url", ""),
        api_key=env.get("PCSTATS_STORE_KEY") or store_data.get("api_key", ""),
        timeout_s=float(store_data.get("timeout_s", 30.0)),
    )
    if store_data.get("sqlite_path"):
        store.sqlite_path = str(store_data["sqlite_path"])

    health_data = data.get("health", {}) or {}
    health = HealthSettings(
        enabled=bool(health_data.get("enabled", True)),
        host=health_data.get("host", "127.0.0.1"),
        port=int(health_data.get("port", 8095)),
    )

    return AgentConfig(
        monitoring=monitoring,
        cleanup=cleanup,
        offline_storage=offline,
        store=store,
        health=health,
        log_level=env.get("PCSTATS_LOG_LEVEL") or data.get("log_level", "INFO"),
    )


def load_config_file(config_path: str | Path) -> AgentConfig:
    """
    Load configuration from a YAML file.

    A missing file is not an error: the agent runs on defaults.

    Raises:
        ConfigError: If the file exists but cannot be parsed
    """
    path = Path(config_path)
    if not path.exists():
        return load_agent_config({})

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    return load_agent_config(data)


def validate_config(config: AgentConfig) -> list[str]:
    """
    Validate the configuration.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    if config.monitoring.interval_seconds <= 0:
        errors.append("monitoring.interval_seconds must be positive")
    if config.monitoring.minimum_cpu_usage_percent < 0:
        errors.append("monitoring.minimum_cpu_usage_percent cannot be negative")
    if config.monitoring.minimum_private_memory_mb < 0:
        errors.append("monitoring.minimum_private_memory_mb cannot be negative")

    if config.cleanup.retention_days < 1:
        errors.append("cleanup.retention_days must be at least 1")
    if config.cleanup.cleanup_interval_hours <= 0:
        errors.append("cleanup.cleanup_interval_hours must be positive")

    if config.offline_storage.max_retention_days < 1:
        errors.append("offline_storage.max_retention_days must be at least 1")
    if config.offline_storage.max_restore_attempts < 1:
        errors.append("offline_storage.max_restore_attempts must be at least 1")

    if config.store.backend == StoreBackend.CLOUD:
        if not config.store.url:
            errors.append("store.url is required for the cloud backend (or set PCSTATS_STORE_URL)")
        if not config.store.api_key:
            errors.append("store.api_key is required for the cloud backend (or set PCSTATS_STORE_KEY)")
    if config.store.timeout_s <= 0:
        errors.append("store.timeout_s must be positive")

    if not 0 < config.health.port < 65536:
        errors.append("health.port must be between 1 and 65535")

    return errors
