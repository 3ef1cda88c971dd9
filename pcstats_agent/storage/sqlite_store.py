"""
SQLite Snapshot Store

Embedded backend with the same schema as the hosted database:
snapshots, processes, process_snapshots, cpu_temperatures.

Features:
- Whole-cycle writes in one transaction
- Batch restore with per-process SAVEPOINTs (one bad process never aborts the batch)
- Retention cleanup (child rows cascade)
- Blocking sqlite calls run in the default executor
"""

import asyncio
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from ..common.exceptions import RestoreError, StoreError, StoreUnavailableError
from ..common.logging_setup import get_service_logger
from .base import ProcessRef, ProcessSnapshot, SnapshotStore
from .models import PendingRecord, ProcessSample, TemperatureSample, process_key, utc_now

logger = get_service_logger("sqlite_store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
    snapshot_timestamp TEXT NOT NULL,
    total_cpu_usage REAL,
    total_memory_usage_mb INTEGER,
    total_available_memory_mb INTEGER
);
CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(snapshot_timestamp DESC);

CREATE TABLE IF NOT EXISTS processes (
    process_id INTEGER PRIMARY KEY AUTOINCREMENT,
    process_name TEXT NOT NULL CHECK (length(process_name) > 0),
    process_path TEXT,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    UNIQUE (process_name, process_path)
);
CREATE INDEX IF NOT EXISTS idx_processes_name ON processes(process_name);

CREATE TABLE IF NOT EXISTS process_snapshots (
    process_snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
    snapshot_id INTEGER NOT NULL REFERENCES snapshots(snapshot_id) ON DELETE CASCADE,
    process_id INTEGER NOT NULL REFERENCES processes(process_id) ON DELETE CASCADE,
    pid INTEGER NOT NULL,
    cpu_usage REAL,
    memory_usage_mb INTEGER,
    private_memory_mb INTEGER,
    virtual_memory_mb INTEGER,
    vram_usage_mb INTEGER,
    thread_count INTEGER,
    handle_count INTEGER
);
CREATE INDEX IF NOT EXISTS idx_process_snapshots_snapshot ON process_snapshots(snapshot_id);
CREATE INDEX IF NOT EXISTS idx_process_snapshots_process ON process_snapshots(process_id);

CREATE TABLE IF NOT EXISTS cpu_temperatures (
    temp_id INTEGER PRIMARY KEY AUTOINCREMENT,
    snapshot_id INTEGER NOT NULL UNIQUE REFERENCES snapshots(snapshot_id) ON DELETE CASCADE,
    cpu_tctl_tdie REAL,
    cpu_die_average REAL,
    cpu_ccd1_tdie REAL,
    cpu_ccd2_tdie REAL,
    thermal_limit_percent REAL,
    thermal_throttling INTEGER
);
"""


class SqliteStore(SnapshotStore):
    """
    SQLite-backed snapshot store.

    Opens a short-lived connection per operation, so calls from the
    executor threads never share a connection.
    """

    def __init__(self, db_path: str | Path, timeout_s: float = 10.0):
        self.db_path = Path(db_path)
        self.timeout_s = timeout_s

    # ============================================
    # CONNECTION HANDLING
    # ============================================

    @contextmanager
    def _get_connection(self):
        """Autocommit connection; transactions are opened explicitly."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    async def _run_db(self, operation: str, func, *args):
        """Run a blocking method in a thread, mapping sqlite errors to store errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(str(e), operation=operation) from e
        except sqlite3.Error as e:
            raise StoreError(str(e), operation=operation) from e

    # ============================================
    # LIFECYCLE
    # ============================================

    async def initialize(self) -> None:
        await self._run_db("initialize", self._init_db)
        logger.info(f"SQLite store initialized at {self.db_path}")

    def _init_db(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot create {self.db_path.parent}: {e}", operation="initialize") from e
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)

    async def is_available(self) -> bool:
        try:
            await self._run_db("is_available", self._ping)
            return True
        except StoreError:
            return False

    def _ping(self) -> None:
        with self._get_connection() as conn:
            conn.execute("SELECT 1 FROM snapshots LIMIT 1").fetchall()

    # ============================================
    # ROW HELPERS (run inside an open connection)
    # ============================================

    @staticmethod
    def _insert_snapshot(
        conn: sqlite3.Connection,
        timestamp: datetime,
        cpu_percent: Optional[float],
        used_memory_mb: Optional[int],
        available_memory_mb: Optional[int],
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO snapshots (snapshot_timestamp, total_cpu_usage, total_memory_usage_mb, total_available_memory_mb)
            VALUES (?, ?, ?, ?)
            """,
            (timestamp.isoformat(), cpu_percent, used_memory_mb, available_memory_mb),
        )
        return cursor.lastrowid

    @staticmethod
    def _resolve_process(conn: sqlite3.Connection, process_name: str, process_path: Optional[str]) -> int:
        now = utc_now().isoformat()
        row = conn.execute(
            "SELECT process_id FROM processes WHERE process_name = ? AND process_path IS ?",
            (process_name, process_path),
        ).fetchone()
        if row is not None:
            conn.execute("UPDATE processes SET last_seen = ? WHERE process_id = ?", (now, row["process_id"]))
            return row["process_id"]

        cursor = conn.execute(
            "INSERT INTO processes (process_name, process_path, first_seen, last_seen) VALUES (?, ?, ?, ?)",
            (process_name, process_path, now, now),
        )
        return cursor.lastrowid

    @staticmethod
    def _insert_process_snapshot(conn: sqlite3.Connection, snapshot_id: int, process_id: int, sample: ProcessSample) -> None:
        conn.execute(
            """
            INSERT INTO process_snapshots (
                snapshot_id, process_id, pid, cpu_usage, memory_usage_mb,
                private_memory_mb, virtual_memory_mb, vram_usage_mb,
                thread_count, handle_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot_id, process_id, sample.pid, sample.cpu_percent, sample.memory_mb,
                sample.private_memory_mb, sample.virtual_memory_mb, sample.vram_mb,
                sample.thread_count, sample.handle_count,
            ),
        )

    @staticmethod
    def _insert_temperature(conn: sqlite3.Connection, snapshot_id: int, sample: TemperatureSample) -> None:
        throttling = None if sample.thermal_throttling is None else int(sample.thermal_throttling)
        conn.execute(
            """
            INSERT INTO cpu_temperatures (
                snapshot_id, cpu_tctl_tdie, cpu_die_average, cpu_ccd1_tdie, cpu_ccd2_tdie,
                thermal_limit_percent, thermal_throttling
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot_id, sample.cpu_tctl_tdie, sample.cpu_die_average, sample.cpu_ccd1_tdie,
                sample.cpu_ccd2_tdie, sample.thermal_limit_percent, throttling,
            ),
        )

    # ============================================
    # WRITE CONTRACT
    # ============================================

    async def create_snapshot(self, cpu_percent, used_memory_mb, available_memory_mb) -> int:
        def _create() -> int:
            with self._transaction() as conn:
                return self._insert_snapshot(conn, utc_now(), cpu_percent, used_memory_mb, available_memory_mb)

        return await self._run_db("create_snapshot", _create)

    async def get_or_create_process(self, process_name: str, process_path: Optional[str]) -> int:
        def _get_or_create() -> int:
            with self._transaction() as conn:
                return self._resolve_process(conn, process_name, process_path)

        return await self._run_db("get_or_create_process", _get_or_create)

    async def batch_get_or_create_processes(self, processes: list[ProcessRef]) -> dict[str, int]:
        def _batch() -> dict[str, int]:
            result = {}
            with self._transaction() as conn:
                for name, path in processes:
                    key = process_key(name, path)
                    if key not in result:
                        result[key] = self._resolve_process(conn, name, path)
            return result

        if not processes:
            return {}
        return await self._run_db("batch_get_or_create_processes", _batch)

    async def create_process_snapshot(self, snapshot_id: int, process_id: int, sample: ProcessSample) -> None:
        await self.batch_create_process_snapshots(snapshot_id, [(process_id, sample)])

    async def batch_create_process_snapshots(self, snapshot_id: int, process_snapshots: list[ProcessSnapshot]) -> None:
        def _batch() -> None:
            with self._transaction() as conn:
                for process_id, sample in process_snapshots:
                    self._insert_process_snapshot(conn, snapshot_id, process_id, sample)

        if process_snapshots:
            await self._run_db("batch_create_process_snapshots", _batch)

    async def create_temperature(self, snapshot_id: int, sample: TemperatureSample) -> None:
        def _create() -> None:
            with self._transaction() as conn:
                self._insert_temperature(conn, snapshot_id, sample)

        await self._run_db("create_temperature", _create)

    async def create_snapshot_with_data(
        self,
        cpu_percent,
        used_memory_mb,
        available_memory_mb,
        process_snapshots: list[ProcessSnapshot],
        temperature: Optional[TemperatureSample],
    ) -> int:
        def _create() -> int:
            with self._transaction() as conn:
                snapshot_id = self._insert_snapshot(conn, utc_now(), cpu_percent, used_memory_mb, available_memory_mb)
                for process_id, sample in process_snapshots:
                    self._insert_process_snapshot(conn, snapshot_id, process_id, sample)
                if temperature is not None:
                    self._insert_temperature(conn, snapshot_id, temperature)
                return snapshot_id

        return await self._run_db("create_snapshot_with_data", _create)

    # ============================================
    # RESTORE
    # ============================================

    async def restore_batch(self, record: PendingRecord) -> int:
        snapshot_id = await self._run_db("restore_batch", self._restore_batch_sync, record)
        logger.info(
            f"Restored offline batch {record.batch_id} (local snapshot {record.local_snapshot_id}) "
            f"as snapshot {snapshot_id} with {len(record.process_samples)} processes"
        )
        return snapshot_id

    def _restore_batch_sync(self, record: PendingRecord) -> int:
        with self._transaction() as conn:
            if record.system_sample is not None:
                system = record.system_sample
                snapshot_id = self._insert_snapshot(
                    conn, record.created_at, system.cpu_percent, system.used_memory_mb, system.available_memory_mb
                )
            else:
                # Snapshot was written online; only child rows are pending
                snapshot_id = record.local_snapshot_id
                exists = conn.execute(
                    "SELECT 1 FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)
                ).fetchone()
                if exists is None:
                    raise RestoreError(f"snapshot {snapshot_id} does not exist", batch_id=record.batch_id)

            for entry in record.process_samples:
                sample = entry.sample
                conn.execute("SAVEPOINT restore_process")
                try:
                    process_id = self._resolve_process(conn, sample.process_name, sample.process_path)
                    self._insert_process_snapshot(conn, snapshot_id, process_id, sample)
                    conn.execute("RELEASE SAVEPOINT restore_process")
                except sqlite3.Error as e:
                    conn.execute("ROLLBACK TO SAVEPOINT restore_process")
                    conn.execute("RELEASE SAVEPOINT restore_process")
                    logger.warning(
                        f"Failed to restore process {sample.process_name!r} in batch {record.batch_id}: {e}"
                    )

            if record.temperature_sample is not None:
                conn.execute("SAVEPOINT restore_temperature")
                try:
                    self._insert_temperature(conn, snapshot_id, record.temperature_sample)
                    conn.execute("RELEASE SAVEPOINT restore_temperature")
                except sqlite3.Error as e:
                    conn.execute("ROLLBACK TO SAVEPOINT restore_temperature")
                    conn.execute("RELEASE SAVEPOINT restore_temperature")
                    logger.warning(f"Failed to restore CPU temperature in batch {record.batch_id}: {e}")

            return snapshot_id

    # ============================================
    # RETENTION / STATISTICS
    # ============================================

    async def cleanup_old_snapshots(self, days_to_keep: int) -> int:
        cutoff = (utc_now() - timedelta(days=days_to_keep)).isoformat()

        def _cleanup() -> int:
            with self._transaction() as conn:
                cursor = conn.execute("DELETE FROM snapshots WHERE snapshot_timestamp < ?", (cutoff,))
                return cursor.rowcount

        deleted = await self._run_db("cleanup_old_snapshots", _cleanup)
        if deleted:
            logger.info(f"Cleanup: deleted {deleted} snapshots older than {days_to_keep} days")
        return deleted

    def get_stats(self) -> dict:
        """Row counts per table."""
        with self._get_connection() as conn:
            stats = {}
            for table in ("snapshots", "processes", "process_snapshots", "cpu_temperatures"):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)
            return stats
