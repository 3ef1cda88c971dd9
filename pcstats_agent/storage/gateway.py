"""
Ingestion Gateway

Offline-resilient front for a SnapshotStore. Callers use the same write
contract as the store; the gateway decides whether a write goes to the
store or to the DurableQueue.

Routing:
- create_snapshot / create_snapshot_with_data always try the store. They
  open a cycle and double as the recovery probe: success while offline
  switches back to online and spawns a reconcile pass.
- Process resolution and per-cycle row writes skip the store while offline
  and fall back to the queue if the store fails while online.
- Store failures never reach the caller. Queue failures (QueueError) do.

While offline, process ids are synthetic (see models.synthetic_process_id).
The gateway remembers every synthetic id it hands out and re-resolves it
by (name, path) when it later shows up in an online write.
"""

import asyncio
from typing import Optional

from ..common.exceptions import StoreError
from ..common.logging_setup import get_service_logger
from .base import ProcessRef, ProcessSnapshot, SnapshotStore
from .connection_state import ConnectionState, Mode
from .models import (
    PendingRecord,
    ProcessSample,
    SystemSample,
    TemperatureSample,
    process_key,
    synthetic_process_id,
)
from .offline_queue import DurableQueue
from .reconciler import Reconciler, ReconcileResult

logger = get_service_logger("gateway")


class IngestionGateway(SnapshotStore):
    """SnapshotStore decorator that queues writes while the store is down"""

    def __init__(
        self,
        store: SnapshotStore,
        queue: DurableQueue,
        state: Optional[ConnectionState] = None,
        max_restore_attempts: int = 3,
        retention_days: int = 7,
    ):
        """
        Args:
            store: The real backend
            queue: Local queue for writes the store could not take
            state: Shared mode flag (created online if not given)
            max_restore_attempts: Failed restores before a batch is dropped
            retention_days: Queue retention applied after each reconcile pass
        """
        self.store = store
        self.queue = queue
        self.state = state or ConnectionState()
        self.reconciler = Reconciler(
            store, queue, self.state,
            max_attempts=max_restore_attempts,
            retention_days=retention_days,
        )

        self._synthetic_ids: dict[int, ProcessRef] = {}
        self._reconcile_task: Optional[asyncio.Task] = None
        self._last_reconcile: Optional[ReconcileResult] = None
        self._offline_writes = 0

    # ============================================
    # LIFECYCLE
    # ============================================

    async def initialize(self) -> None:
        """
        Initialize the backend. An unreachable store starts the gateway
        offline instead of failing; pending batches left by an earlier run
        are restored right away when the store is up.
        """
        try:
            await self.store.initialize()
        except Exception as e:
            self._store_failed(e, "store unavailable at startup")
            return

        expired = self.queue.purge_expired()
        if expired:
            logger.warning(f"Purged {expired} expired offline batches at startup")

        pending = self.queue.count()
        if pending and self.state.is_online:
            logger.info(f"Found {pending} offline batches from a previous run")
            self.start_reconcile()

    async def close(self) -> None:
        """Cancel a running reconcile pass and close the backend."""
        task = self._reconcile_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.store.close()

    async def is_available(self) -> bool:
        return await self.store.is_available()

    # ============================================
    # CYCLE-OPENING WRITES (recovery probe)
    # ============================================

    async def create_snapshot(self, cpu_percent, used_memory_mb, available_memory_mb) -> int:
        try:
            snapshot_id = await self.store.create_snapshot(cpu_percent, used_memory_mb, available_memory_mb)
        except Exception as e:
            self._store_failed(e)
            return self._queue_new_cycle(
                SystemSample(cpu_percent, used_memory_mb, available_memory_mb), [], None
            )

        self._store_succeeded()
        return snapshot_id

    async def create_snapshot_with_data(
        self,
        cpu_percent,
        used_memory_mb,
        available_memory_mb,
        process_snapshots: list[ProcessSnapshot],
        temperature: Optional[TemperatureSample],
    ) -> int:
        try:
            resolved = await self._resolve_synthetic(process_snapshots)
            snapshot_id = await self.store.create_snapshot_with_data(
                cpu_percent, used_memory_mb, available_memory_mb, resolved, temperature
            )
        except Exception as e:
            self._store_failed(e)
            return self._queue_new_cycle(
                SystemSample(cpu_percent, used_memory_mb, available_memory_mb),
                process_snapshots,
                temperature,
            )

        self._store_succeeded()
        return snapshot_id

    # ============================================
    # PER-CYCLE WRITES
    # ============================================

    async def get_or_create_process(self, process_name: str, process_path: Optional[str]) -> int:
        if self.state.is_online:
            try:
                return await self.store.get_or_create_process(process_name, process_path)
            except Exception as e:
                self._store_failed(e)
        return self._synthetic_id(process_name, process_path)

    async def batch_get_or_create_processes(self, processes: list[ProcessRef]) -> dict[str, int]:
        if self.state.is_online:
            try:
                return await self.store.batch_get_or_create_processes(processes)
            except Exception as e:
                self._store_failed(e)
        return {process_key(name, path): self._synthetic_id(name, path) for name, path in processes}

    async def create_process_snapshot(self, snapshot_id: int, process_id: int, sample: ProcessSample) -> None:
        await self.batch_create_process_snapshots(snapshot_id, [(process_id, sample)])

    async def batch_create_process_snapshots(self, snapshot_id: int, process_snapshots: list[ProcessSnapshot]) -> None:
        if self.state.is_online:
            try:
                resolved = await self._resolve_synthetic(process_snapshots)
                await self.store.batch_create_process_snapshots(snapshot_id, resolved)
                return
            except Exception as e:
                self._store_failed(e)
        self._queue_rows(snapshot_id, process_snapshots, None)

    async def create_temperature(self, snapshot_id: int, sample: TemperatureSample) -> None:
        if self.state.is_online:
            try:
                await self.store.create_temperature(snapshot_id, sample)
                return
            except Exception as e:
                self._store_failed(e)
        self._queue_rows(snapshot_id, [], sample)

    # ============================================
    # PASS-THROUGH
    # ============================================

    async def restore_batch(self, record: PendingRecord) -> int:
        return await self.store.restore_batch(record)

    async def cleanup_old_snapshots(self, days_to_keep: int) -> int:
        if not self.state.is_online:
            logger.info("Skipping snapshot cleanup while offline")
            return 0
        try:
            return await self.store.cleanup_old_snapshots(days_to_keep)
        except Exception as e:
            self._store_failed(e)
            return 0

    # ============================================
    # RECONCILE
    # ============================================

    def start_reconcile(self) -> asyncio.Task:
        """
        Spawn a reconcile pass in the background.

        A pass spawned while another is still running waits for it to
        finish first, so passes never overlap.
        """
        previous = self._reconcile_task
        self._reconcile_task = asyncio.create_task(self._run_reconcile(previous))
        return self._reconcile_task

    async def wait_reconciled(self) -> Optional[ReconcileResult]:
        """Wait for the current reconcile pass (if any) and return its result."""
        if self._reconcile_task is not None:
            await asyncio.wait([self._reconcile_task])
        return self._last_reconcile

    async def _run_reconcile(self, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            self._last_reconcile = await self.reconciler.run()
        except Exception:
            logger.exception("Reconcile pass failed")

    def _store_failed(self, error: Exception, context: str = "store write failed") -> None:
        """Switch offline for any store failure. Unexpected error types keep their traceback in the log."""
        if not isinstance(error, StoreError):
            logger.error(f"Unexpected store failure ({context}): {error!r}", exc_info=error)
        self.state.go_offline(f"{context}: {error}")

    def _store_succeeded(self) -> None:
        if self.state.go_online("store write succeeded"):
            self.start_reconcile()

    # ============================================
    # OFFLINE ROUTING
    # ============================================

    def _synthetic_id(self, process_name: str, process_path: Optional[str]) -> int:
        process_id = synthetic_process_id(process_name, process_path)
        self._synthetic_ids[process_id] = (process_name, process_path)
        logger.debug(f"Offline process id {process_id} for {process_key(process_name, process_path)}")
        return process_id

    async def _resolve_synthetic(self, process_snapshots: list[ProcessSnapshot]) -> list[ProcessSnapshot]:
        """Swap synthetic process ids for real ones. Store errors propagate."""
        pending = [
            (sample.process_name, sample.process_path)
            for process_id, sample in process_snapshots
            if process_id in self._synthetic_ids
        ]
        if not pending:
            return process_snapshots

        real_ids = await self.store.batch_get_or_create_processes(pending)
        logger.info(f"Re-resolved {len(real_ids)} offline process ids")
        return [
            (real_ids[sample.key] if process_id in self._synthetic_ids else process_id, sample)
            for process_id, sample in process_snapshots
        ]

    def _queue_new_cycle(
        self,
        system: SystemSample,
        process_snapshots: list[ProcessSnapshot],
        temperature: Optional[TemperatureSample],
    ) -> int:
        local_id = self.queue.next_local_snapshot_id()
        record = PendingRecord(
            local_snapshot_id=local_id,
            system_sample=system,
            temperature_sample=temperature,
        )
        for process_id, sample in process_snapshots:
            record.add_process(process_id, sample)

        self.queue.put(record)
        self._offline_writes += 1
        logger.info(
            f"Stored snapshot offline as local id {local_id} "
            f"({len(process_snapshots)} processes, temperature={'yes' if temperature else 'no'})"
        )
        return local_id

    def _queue_rows(
        self,
        snapshot_id: int,
        process_snapshots: list[ProcessSnapshot],
        temperature: Optional[TemperatureSample],
    ) -> None:
        """Merge rows into the record for snapshot_id, creating one if needed."""
        record = self.queue.find(snapshot_id)
        if record is None:
            record = PendingRecord(local_snapshot_id=snapshot_id)
        for process_id, sample in process_snapshots:
            record.add_process(process_id, sample)
        if temperature is not None:
            record.temperature_sample = temperature

        self.queue.put(record)
        self._offline_writes += 1
        logger.info(
            f"Stored {len(process_snapshots)} process rows"
            + (" and temperature" if temperature else "")
            + f" offline for snapshot {snapshot_id}"
        )

    # ============================================
    # STATUS
    # ============================================

    def get_status(self) -> dict:
        """Mode, queue depth and the last reconcile outcome."""
        reconciling = self._reconcile_task is not None and not self._reconcile_task.done()
        return {
            **self.state.to_dict(),
            "online": self.state.mode == Mode.ONLINE,
            "pending": self.queue.count(),
            "offline_writes": self._offline_writes,
            "synthetic_process_ids": len(self._synthetic_ids),
            "reconciling": reconciling,
            "last_reconcile": self._last_reconcile.to_dict() if self._last_reconcile else None,
        }
