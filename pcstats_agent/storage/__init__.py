"""
Storage Layer

- base.py - SnapshotStore write contract
- sqlite_store.py / cloud_store.py - Concrete backends
- offline_queue.py - DurableQueue of pending snapshot cycles
- gateway.py - IngestionGateway (online/offline routing)
- reconciler.py - Replays queued cycles once the store is back
"""

from .base import SnapshotStore
from .cloud_store import CloudStore
from .connection_state import ConnectionState, Mode
from .gateway import IngestionGateway
from .models import (
    PendingRecord,
    ProcessEntry,
    ProcessSample,
    SystemSample,
    TemperatureSample,
    process_key,
    synthetic_process_id,
)
from .offline_queue import DurableQueue
from .reconciler import Reconciler, ReconcileResult
from .sqlite_store import SqliteStore

__all__ = [
    "SnapshotStore",
    "SqliteStore",
    "CloudStore",
    "DurableQueue",
    "IngestionGateway",
    "ConnectionState",
    "Mode",
    "Reconciler",
    "ReconcileResult",
    "PendingRecord",
    "ProcessEntry",
    "ProcessSample",
    "SystemSample",
    "TemperatureSample",
    "process_key",
    "synthetic_process_id",
]
