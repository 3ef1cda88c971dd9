"""
Offline Batch Reconciler

Replays queued snapshot cycles into the store once it is reachable again.

Pass outline:
1. Take the pending records, oldest first
2. Before each record, confirm the store is still reachable; stop otherwise
3. restore_batch() the record; remove it on success
4. On failure bump retry_count and re-persist, or drop it (data loss) once
   it has failed max_attempts times
5. Purge records older than the retention and log the totals
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from ..common.logging_setup import get_service_logger, log_data_loss
from .base import SnapshotStore
from .connection_state import ConnectionState
from .models import utc_now
from .offline_queue import DurableQueue

logger = get_service_logger("reconciler")

PROGRESS_LOG_EVERY = 10


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass"""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0
    purged: int = 0
    stopped_early: bool = False
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "dropped": self.dropped,
            "purged": self.purged,
            "stopped_early": self.stopped_early,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class Reconciler:
    """Drains the DurableQueue into a SnapshotStore"""

    def __init__(
        self,
        store: SnapshotStore,
        queue: DurableQueue,
        state: ConnectionState,
        max_attempts: int = 3,
        retention_days: int = 7,
    ):
        self.store = store
        self.queue = queue
        self.state = state
        self.max_attempts = max_attempts
        self.retention = timedelta(days=retention_days)

    async def run(self) -> ReconcileResult:
        """
        Run one pass over everything currently queued.

        Queue I/O errors propagate; restore failures never do.
        """
        result = ReconcileResult()
        records = self.queue.list_pending()
        result.total = len(records)

        if records:
            logger.info(f"Starting restore of {len(records)} offline batches")

        for index, record in enumerate(records, start=1):
            if not self.state.is_online or not await self.store.is_available():
                self.state.go_offline("store unavailable during restore")
                result.stopped_early = True
                logger.warning(f"Restore stopped after {index - 1}/{len(records)} batches: store unavailable")
                break

            try:
                snapshot_id = await self.store.restore_batch(record)
            except Exception as e:
                self._record_failure(record, e, result)
            else:
                self.queue.remove(record.batch_id)
                result.succeeded += 1
                logger.debug(f"Batch {record.batch_id} restored as snapshot {snapshot_id}")

            if index % PROGRESS_LOG_EVERY == 0:
                logger.info(f"Restore progress: {index}/{len(records)} batches processed")

        result.purged = self.queue.purge_older_than(self.retention)
        result.finished_at = utc_now()

        if result.total or result.purged:
            logger.info(
                f"Restore finished: {result.succeeded} restored, {result.failed} failed, "
                f"{result.dropped} dropped, {result.purged} purged"
                + (" (stopped early)" if result.stopped_early else "")
            )
        return result

    def _record_failure(self, record, error: Exception, result: ReconcileResult) -> None:
        record.retry_count += 1
        record.last_error = str(error)

        if record.retry_count >= self.max_attempts:
            self.queue.remove(record.batch_id)
            result.dropped += 1
            log_data_loss(
                logger,
                record.batch_id,
                record.local_snapshot_id,
                f"restore failed {record.retry_count} times, last error: {error}",
                process_count=len(record.process_samples),
            )
            return

        self.queue.put(record)
        result.failed += 1
        logger.warning(
            f"Restore of batch {record.batch_id} failed "
            f"(attempt {record.retry_count}/{self.max_attempts}): {error}"
        )
