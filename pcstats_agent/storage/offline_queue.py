"""
Durable Offline Queue

File-per-record persistence for snapshot cycles that could not be written
to the store. Used by two actors: the collection loop (append/merge while
offline) and the reconciler (drain once the store is back).

Layout of the queue directory:
    snapshot_<batch_id>_<YYYYmmdd_HHMMSS>.json   one PendingRecord each
    snapshot_counter.txt                         last issued local snapshot id

Guarantees:
1. A record is on disk (written, fsynced, renamed into place) before put() returns
2. At most one file per batch_id; put() replaces the previous version
3. Local snapshot ids are never reused while a record still references them
4. Replay order is the record's explicit sequence number, not file timestamps
"""

import json
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..common.exceptions import QueueError
from ..common.logging_setup import get_service_logger
from .models import PendingRecord, parse_timestamp, utc_now

logger = get_service_logger("offline_queue")

FILE_PREFIX = "snapshot_"
FILE_PATTERN = f"{FILE_PREFIX}*.json"
COUNTER_FILE = "snapshot_counter.txt"


class DurableQueue:
    """
    Crash-safe local queue of PendingRecords.

    Every operation holds one lock over the directory. Volume is at most
    one small JSON write per monitoring cycle, so a single coarse lock is
    enough.
    """

    def __init__(self, path: str | Path, retention_days: int = 7):
        """
        Initialize the queue.

        Args:
            path: Queue directory (created if missing)
            retention_days: Default age limit used by purge_expired()

        Raises:
            QueueError: If the directory cannot be created
        """
        self.path = Path(path)
        self.retention = timedelta(days=retention_days)
        self._lock = threading.Lock()

        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise QueueError(
                f"Cannot create queue directory {self.path}: {e}",
                operation="init",
                path=str(self.path),
            ) from e

        self._counter = 0
        self._last_sequence = 0
        self._recover_counters()

        logger.info(
            f"Offline queue initialized at {self.path} "
            f"({self.count()} pending, next local snapshot id {self._counter + 1})"
        )

    # ============================================
    # WRITE PATH
    # ============================================

    def put(self, record: PendingRecord) -> Path:
        """
        Persist a record, replacing any earlier version of the same batch.

        Merging is the caller's job: pass the already-merged record.
        Assigns record.sequence on first put.

        Returns:
            Path of the written file

        Raises:
            QueueError: On any filesystem failure
        """
        with self._lock:
            if record.sequence is None:
                self._last_sequence += 1
                record.sequence = self._last_sequence
            else:
                self._last_sequence = max(self._last_sequence, record.sequence)

            target = self.path / self._file_name(record)
            self._write_atomic(target, json.dumps(record.to_dict(), separators=(",", ":")), "put")

            # Drop stale versions of this batch written under another name
            for stale in self.path.glob(f"{FILE_PREFIX}{record.batch_id}_*.json"):
                if stale != target:
                    self._unlink(stale)

            if record.local_snapshot_id > self._counter:
                self._counter = record.local_snapshot_id
                self._persist_counter()

        logger.info(
            f"Saved offline batch {record.batch_id} (local snapshot {record.local_snapshot_id}) "
            f"with {len(record.process_samples)} processes to {target.name}"
        )
        return target

    def next_local_snapshot_id(self) -> int:
        """
        Allocate the next local snapshot id and persist it immediately.

        Raises:
            QueueError: If the counter file cannot be written
        """
        with self._lock:
            self._counter += 1
            self._persist_counter()
            return self._counter

    # ============================================
    # READ PATH
    # ============================================

    def list_pending(self) -> list[PendingRecord]:
        """All pending records, oldest first (by sequence, then created_at)."""
        with self._lock:
            records = [record for _, record in self._load_all()]
        records.sort(key=lambda r: (r.sequence if r.sequence is not None else 0, r.created_at))
        return records

    def find(self, local_snapshot_id: int) -> Optional[PendingRecord]:
        """Pending record for a local snapshot id, or None."""
        with self._lock:
            for _, record in self._load_all():
                if record.local_snapshot_id == local_snapshot_id:
                    return record
        return None

    def count(self) -> int:
        """Number of pending record files."""
        with self._lock:
            return len(list(self.path.glob(FILE_PATTERN)))

    # ============================================
    # REMOVAL / RETENTION
    # ============================================

    def remove(self, batch_id: str) -> int:
        """
        Delete every file for a batch. Idempotent.

        Returns:
            Number of files deleted
        """
        removed = 0
        with self._lock:
            for file in self.path.glob(f"{FILE_PREFIX}{batch_id}_*.json"):
                if self._unlink(file):
                    removed += 1
        if removed:
            logger.debug(f"Removed offline batch {batch_id} ({removed} file(s))")
        return removed

    def purge_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete records created strictly before now - retention,
        whatever their retry state.

        Returns:
            Number of records purged
        """
        cutoff = (now or utc_now()) - retention
        purged = 0

        with self._lock:
            for file in self.path.glob(FILE_PATTERN):
                created_at = self._created_at(file)
                if created_at is not None and created_at < cutoff and self._unlink(file):
                    purged += 1

        if purged:
            logger.info(f"Purged {purged} offline batches older than {retention}")
        return purged

    def purge_expired(self) -> int:
        """Purge using the configured retention."""
        return self.purge_older_than(self.retention)

    # ============================================
    # STATISTICS
    # ============================================

    def get_stats(self) -> dict:
        """Get queue statistics."""
        with self._lock:
            files = list(self.path.glob(FILE_PATTERN))
            created = [c for c in (self._created_at(f) for f in files) if c is not None]
            size_bytes = 0
            for f in files:
                try:
                    size_bytes += f.stat().st_size
                except FileNotFoundError:
                    continue
            return {
                "pending": len(files),
                "oldest_created_at": min(created).isoformat() if created else None,
                "newest_created_at": max(created).isoformat() if created else None,
                "size_kb": round(size_bytes / 1024, 1),
                "last_local_snapshot_id": self._counter,
            }

    # ============================================
    # INTERNALS (caller holds the lock)
    # ============================================

    @staticmethod
    def _file_name(record: PendingRecord) -> str:
        return f"{FILE_PREFIX}{record.batch_id}_{record.created_at:%Y%m%d_%H%M%S}.json"

    def _load_all(self) -> list[tuple[Path, PendingRecord]]:
        loaded = []
        for file in self.path.glob(FILE_PATTERN):
            try:
                with open(file, "r", encoding="utf-8") as f:
                    loaded.append((file, PendingRecord.from_dict(json.load(f))))
            except FileNotFoundError:
                continue
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable offline batch file {file.name}: {e}")
        return loaded

    def _created_at(self, file: Path) -> Optional[datetime]:
        """Record creation time; falls back to mtime for unreadable files."""
        try:
            with open(file, "r", encoding="utf-8") as f:
                return parse_timestamp(json.load(f)["created_at"])
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError):
            try:
                return datetime.fromtimestamp(file.stat().st_mtime, timezone.utc)
            except OSError:
                return None

    def _write_atomic(self, target: Path, text: str, operation: str) -> None:
        temp = target.with_name(target.name + ".tmp")
        try:
            with open(temp, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp, target)
        except OSError as e:
            temp.unlink(missing_ok=True)
            raise QueueError(f"Failed to write {target.name}: {e}", operation=operation, path=str(target)) from e

    def _unlink(self, file: Path) -> bool:
        try:
            file.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete offline batch file {file.name}: {e}")
            return False

    def _persist_counter(self) -> None:
        self._write_atomic(self.path / COUNTER_FILE, str(self._counter), "next_local_snapshot_id")

    def _recover_counters(self) -> None:
        counter_path = self.path / COUNTER_FILE
        if counter_path.exists():
            try:
                self._counter = int(counter_path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to read snapshot counter, rebuilding from pending batches: {e}")

        # Never fall behind an id or sequence still referenced on disk
        for _, record in self._load_all():
            self._counter = max(self._counter, record.local_snapshot_id)
            if record.sequence is not None:
                self._last_sequence = max(self._last_sequence, record.sequence)
