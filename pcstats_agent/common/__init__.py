"""
Common Utilities

Shared modules used across the agent:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Fixed-interval async loop
"""

from .config import (
    AgentConfig,
    MonitoringSettings,
    CleanupSettings,
    OfflineStorageSettings,
    StoreSettings,
    HealthSettings,
    StoreBackend,
    load_agent_config,
    load_config_file,
    validate_config,
)
from .exceptions import (
    PCStatsError,
    ConfigError,
    StoreError,
    StoreUnavailableError,
    RestoreError,
    QueueError,
)
from .logging_setup import (
    setup_logging,
    set_log_level,
    get_service_logger,
    log_mode_change,
    log_data_loss,
    log_cycle,
)
from .scheduler import ScheduledLoop

__all__ = [
    # Config
    "AgentConfig",
    "MonitoringSettings",
    "CleanupSettings",
    "OfflineStorageSettings",
    "StoreSettings",
    "HealthSettings",
    "StoreBackend",
    "load_agent_config",
    "load_config_file",
    "validate_config",
    # Exceptions
    "PCStatsError",
    "ConfigError",
    "StoreError",
    "StoreUnavailableError",
    "RestoreError",
    "QueueError",
    # Logging
    "setup_logging",
    "set_log_level",
    "get_service_logger",
    "log_mode_change",
    "log_data_loss",
    "log_cycle",
    # Scheduling
    "ScheduledLoop",
]
