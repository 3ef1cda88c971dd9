"""
Snapshot Store Interface

The write contract shared by the concrete backends (SqliteStore,
CloudStore) and by the IngestionGateway that decorates them.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .models import PendingRecord, ProcessSample, TemperatureSample, process_key

ProcessRef = tuple[str, Optional[str]]  # (process_name, process_path)
ProcessSnapshot = tuple[int, ProcessSample]  # (process_id, sample)


class SnapshotStore(ABC):
    """Durable home for snapshots, processes and temperature readings"""

    async def initialize(self) -> None:
        """Prepare the backend (schema, connection check). Default: no-op."""

    async def close(self) -> None:
        """Release connections. Default: no-op."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap reachability check. Never raises."""

    @abstractmethod
    async def create_snapshot(
        self,
        cpu_percent: Optional[float],
        used_memory_mb: Optional[int],
        available_memory_mb: Optional[int],
    ) -> int:
        """Insert a snapshot row and return its id."""

    @abstractmethod
    async def get_or_create_process(self, process_name: str, process_path: Optional[str]) -> int:
        """Return the id for (name, path), creating the process if new."""

    async def batch_get_or_create_processes(self, processes: list[ProcessRef]) -> dict[str, int]:
        """
        Resolve many processes at once.

        Returns:
            Map of process_key(name, path) -> process id
        """
        result = {}
        for name, path in processes:
            key = process_key(name, path)
            if key not in result:
                result[key] = await self.get_or_create_process(name, path)
        return result

    @abstractmethod
    async def create_process_snapshot(self, snapshot_id: int, process_id: int, sample: ProcessSample) -> None:
        """Insert one process row against a snapshot."""

    async def batch_create_process_snapshots(self, snapshot_id: int, process_snapshots: list[ProcessSnapshot]) -> None:
        for process_id, sample in process_snapshots:
            await self.create_process_snapshot(snapshot_id, process_id, sample)

    @abstractmethod
    async def create_temperature(self, snapshot_id: int, sample: TemperatureSample) -> None:
        """Insert the temperature row for a snapshot."""

    @abstractmethod
    async def create_snapshot_with_data(
        self,
        cpu_percent: Optional[float],
        used_memory_mb: Optional[int],
        available_memory_mb: Optional[int],
        process_snapshots: list[ProcessSnapshot],
        temperature: Optional[TemperatureSample],
    ) -> int:
        """Write a whole cycle atomically and return the snapshot id."""

    @abstractmethod
    async def restore_batch(self, record: PendingRecord) -> int:
        """
        Replay one queued cycle in a single transaction.

        Processes are resolved by (name, path); a failing process is logged
        and skipped. Transaction-level failures raise.

        Returns:
            Store-issued snapshot id the record was written under
        """

    @abstractmethod
    async def cleanup_old_snapshots(self, days_to_keep: int) -> int:
        """Delete snapshots older than the retention. Returns rows deleted."""
