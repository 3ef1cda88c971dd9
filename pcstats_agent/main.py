#!/usr/bin/env python3
"""
PC Stats Agent - Main Entry Point

Usage:
    pcstats-agent                     # Use default config.yaml
    pcstats-agent --config my.yaml    # Use custom config file
    pcstats-agent --dry-run           # Print config and exit

The agent will:
1. Load configuration from YAML (plus environment overrides)
2. Open the configured store behind the offline gateway
3. Sample metrics every interval until stopped
"""

import argparse
import asyncio
import sys

from .common.config import AgentConfig, StoreBackend, load_config_file, validate_config
from .common.exceptions import ConfigError, PCStatsError
from .common.logging_setup import get_service_logger, set_log_level
from .storage.base import SnapshotStore
from .storage.cloud_store import CloudStore
from .storage.gateway import IngestionGateway
from .storage.offline_queue import DurableQueue
from .storage.sqlite_store import SqliteStore
from .worker import Worker

logger = get_service_logger("main")


def build_store(config: AgentConfig) -> SnapshotStore:
    """
    Compose the store stack from configuration.

    With offline storage enabled the backend is wrapped in an
    IngestionGateway; otherwise writes go straight to the backend.
    """
    if config.store.backend == StoreBackend.CLOUD:
        backend: SnapshotStore = CloudStore(config.store.url, config.store.api_key, timeout_s=config.store.timeout_s)
    else:
        backend = SqliteStore(config.store.sqlite_path)

    offline = config.offline_storage
    if not offline.enabled:
        logger.warning("Offline storage disabled: writes fail while the store is unreachable")
        return backend

    queue = DurableQueue(offline.path, retention_days=offline.max_retention_days)
    return IngestionGateway(
        backend,
        queue,
        max_restore_attempts=offline.max_restore_attempts,
        retention_days=offline.max_retention_days,
    )


def print_config_summary(config: AgentConfig) -> None:
    """Print a summary of the configuration."""
    print("\n" + "=" * 60)
    print("  PC STATS AGENT")
    print("=" * 60)

    monitoring = config.monitoring
    print(f"\n  Interval: {monitoring.interval_seconds}s")
    print(f"  Thresholds: CPU >= {monitoring.minimum_cpu_usage_percent}% "
          f"OR private memory >= {monitoring.minimum_private_memory_mb}MB")

    store = config.store
    target = store.url if store.backend == StoreBackend.CLOUD else store.sqlite_path
    print(f"\n  Store: {store.backend.value} ({target})")

    offline = config.offline_storage
    if offline.enabled:
        print(f"  Offline queue: {offline.path} "
              f"(retention {offline.max_retention_days}d, {offline.max_restore_attempts} restore attempts)")
    else:
        print("  Offline queue: disabled")

    cleanup = config.cleanup
    if cleanup.enable_auto_cleanup:
        print(f"  Cleanup: every {cleanup.cleanup_interval_hours}h, keep {cleanup.retention_days}d")
    else:
        print("  Cleanup: disabled")

    if config.health.enabled:
        print(f"  Health: http://{config.health.host}:{config.health.port}/health")

    print("=" * 60 + "\n")


async def main_async(config: AgentConfig) -> None:
    worker = Worker(config, build_store(config))
    try:
        await worker.start()
    finally:
        await worker.stop()


def cli(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="PC Stats monitoring agent")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without starting the agent",
    )
    args = parser.parse_args(argv)

    try:
        config = load_config_file(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    set_log_level(config.log_level)
    print_config_summary(config)

    if args.dry_run:
        print("Dry run mode - exiting without starting the agent")
        sys.exit(0)

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except PCStatsError as e:
        logger.error(f"Agent stopped: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
