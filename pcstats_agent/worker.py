"""
Collection Worker

Runs one monitoring cycle per interval:
1. Sample system, process and temperature metrics
2. Keep processes above the CPU or private-memory threshold
3. Resolve process ids and write the whole cycle in one call
4. Run store retention cleanup when its interval has elapsed

The store is normally an IngestionGateway, so cycles keep being recorded
while the backend is unreachable. A failing cycle is logged and the loop
carries on.
"""

import asyncio
import signal
import time
from datetime import datetime, timezone
from typing import Optional

from .common.config import AgentConfig
from .common.exceptions import StoreError
from .common.logging_setup import get_service_logger, log_cycle
from .common.scheduler import ScheduledLoop
from .services.health import HealthServer
from .services.metrics_collector import MetricsCollector
from .storage.base import SnapshotStore
from .storage.gateway import IngestionGateway
from .storage.models import ProcessSample, SystemSample, TemperatureSample

logger = get_service_logger("worker")


def filter_processes(
    processes: list[ProcessSample],
    minimum_cpu_percent: float,
    minimum_private_memory_mb: int,
) -> list[ProcessSample]:
    """Processes at or above either threshold"""
    return [
        p for p in processes
        if p.cpu_percent >= minimum_cpu_percent or p.private_memory_mb >= minimum_private_memory_mb
    ]


class Worker:
    """Drives collection cycles against a SnapshotStore"""

    def __init__(
        self,
        config: AgentConfig,
        store: SnapshotStore,
        collector: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.store = store
        self.collector = collector or MetricsCollector()

        self._loop = ScheduledLoop(
            config.monitoring.interval_seconds,
            self.run_cycle,
            name="collection",
            initial_delay=1.0,
        )

        self.health_server: HealthServer | None = None
        if config.health.enabled:
            self.health_server = HealthServer(self.get_status, config.health.host, config.health.port)

        self._shutdown_event = asyncio.Event()
        self._is_running = False
        self._last_cleanup: float | None = None

        self._cycle_count = 0
        self._last_snapshot_id: int | None = None
        self._last_cycle_at: str | None = None
        self._last_process_count = 0

    # ============================================
    # LIFECYCLE
    # ============================================

    async def start(self) -> None:
        """Start collecting and block until a shutdown signal."""
        logger.info(
            f"Starting PC Stats agent (interval {self.config.monitoring.interval_seconds}s, "
            f"thresholds CPU >= {self.config.monitoring.minimum_cpu_usage_percent}% "
            f"OR private memory >= {self.config.monitoring.minimum_private_memory_mb}MB)"
        )
        if self.config.cleanup.enable_auto_cleanup:
            logger.info(
                f"Automatic cleanup enabled - retention {self.config.cleanup.retention_days} days, "
                f"interval {self.config.cleanup.cleanup_interval_hours} hours"
            )
        else:
            logger.info("Automatic cleanup disabled")

        await self.store.initialize()
        if self.health_server:
            await self.health_server.start()

        self._is_running = True
        await self._loop.start()

        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the loop, the health server and the store."""
        logger.info("Stopping PC Stats agent")
        self._is_running = False

        await self._loop.stop()
        if self.health_server:
            await self.health_server.stop()
        await self.store.close()

        logger.info("PC Stats agent stopped")

    def request_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self.request_shutdown))

    # ============================================
    # CYCLE
    # ============================================

    def _collect(self) -> tuple[SystemSample, list[ProcessSample], Optional[TemperatureSample]]:
        return (
            self.collector.collect_system(),
            self.collector.collect_processes(),
            self.collector.collect_temperatures(),
        )

    async def run_cycle(self) -> int:
        """
        Collect and store one snapshot.

        Returns:
            Snapshot id (a local id while the store is offline)
        """
        start = time.monotonic()
        monitoring = self.config.monitoring

        # psutil sampling blocks, keep it off the event loop
        system, processes, temperature = await asyncio.get_running_loop().run_in_executor(None, self._collect)

        selected = filter_processes(
            processes, monitoring.minimum_cpu_usage_percent, monitoring.minimum_private_memory_mb
        )
        logger.info(
            f"Saving detailed metrics for {len(selected)} of {len(processes)} processes "
            f"(CPU >= {monitoring.minimum_cpu_usage_percent}% OR memory >= {monitoring.minimum_private_memory_mb}MB)"
        )
        if temperature is not None:
            logger.debug(
                f"CPU temperature: Tctl/Tdie={temperature.cpu_tctl_tdie}, "
                f"CCD1={temperature.cpu_ccd1_tdie}, CCD2={temperature.cpu_ccd2_tdie}"
            )

        process_ids = await self.store.batch_get_or_create_processes(
            [(p.process_name, p.process_path) for p in selected]
        )
        snapshot_id = await self.store.create_snapshot_with_data(
            system.cpu_percent,
            system.used_memory_mb,
            system.available_memory_mb,
            [(process_ids[p.key], p) for p in selected],
            temperature,
        )

        self._cycle_count += 1
        self._last_snapshot_id = snapshot_id
        self._last_cycle_at = datetime.now(timezone.utc).isoformat()
        self._last_process_count = len(selected)
        log_cycle(
            logger,
            snapshot_id,
            system.cpu_percent,
            system.used_memory_mb,
            len(selected),
            (time.monotonic() - start) * 1000,
        )

        await self._maybe_cleanup()
        return snapshot_id

    async def _maybe_cleanup(self) -> None:
        cleanup = self.config.cleanup
        if not cleanup.enable_auto_cleanup:
            return

        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < cleanup.cleanup_interval_hours * 3600:
            return

        logger.info(f"Starting automatic cleanup (retention: {cleanup.retention_days} days)")
        try:
            deleted = await self.store.cleanup_old_snapshots(cleanup.retention_days)
        except StoreError as e:
            logger.error(f"Cleanup failed: {e}")
            return

        self._last_cleanup = now
        logger.info(f"Cleanup completed, deleted {deleted} snapshots older than {cleanup.retention_days} days")

    # ============================================
    # STATUS
    # ============================================

    def get_status(self) -> dict:
        status = {
            "running": self._is_running,
            "cycles": self._cycle_count,
            "last_snapshot_id": self._last_snapshot_id,
            "last_cycle_at": self._last_cycle_at,
            "last_process_count": self._last_process_count,
            "loop": self._loop.get_stats(),
            "collector": self.collector.get_stats(),
        }
        if isinstance(self.store, IngestionGateway):
            status["gateway"] = self.store.get_status()
            status["queue"] = self.store.queue.get_stats()
        return status
