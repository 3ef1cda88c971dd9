from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from pcstats_agent.common.exceptions import QueueError
from pcstats_agent.storage.models import PendingRecord
from pcstats_agent.storage.offline_queue import COUNTER_FILE, DurableQueue

from .helpers.fakes import make_process, make_system


def _files(queue: DurableQueue):
    return sorted(p.name for p in queue.path.glob("snapshot_*.json"))


def test_put_writes_one_file_per_batch_and_replaces_on_merge(queue):
    record = PendingRecord(local_snapshot_id=1, system_sample=make_system())
    record.add_process(11, make_process("chrome.exe"))
    queue.put(record)

    record.add_process(12, make_process("firefox.exe"))
    queue.put(record)

    assert len(_files(queue)) == 1
    loaded = queue.find(1)
    assert loaded is not None
    assert [e.sample.process_name for e in loaded.process_samples] == ["chrome.exe", "firefox.exe"]
    assert [e.local_process_id for e in loaded.process_samples] == [11, 12]


def test_record_file_is_readable_json(queue):
    record = PendingRecord(local_snapshot_id=3, system_sample=make_system(12.0))
    path = queue.put(record)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["batch_id"] == record.batch_id
    assert data["local_snapshot_id"] == 3
    assert data["system_sample"]["cpu_percent"] == 12.0
    assert data["retry_count"] == 0
    assert not list(queue.path.glob("*.tmp"))


def test_list_pending_keeps_first_put_order_across_rewrites(queue):
    records = [PendingRecord(local_snapshot_id=i, system_sample=make_system()) for i in (1, 2, 3)]
    for r in records:
        queue.put(r)

    # a retry rewrites the oldest record; it must stay first
    records[0].retry_count = 1
    queue.put(records[0])

    pending = queue.list_pending()
    assert [r.batch_id for r in pending] == [r.batch_id for r in records]
    assert pending[0].retry_count == 1


def test_sequence_survives_restart(queue, tmp_path):
    first = PendingRecord(local_snapshot_id=1)
    queue.put(first)

    reopened = DurableQueue(queue.path)
    second = PendingRecord(local_snapshot_id=2)
    reopened.put(second)

    assert second.sequence > first.sequence
    assert [r.batch_id for r in reopened.list_pending()] == [first.batch_id, second.batch_id]


def test_remove_is_idempotent(queue):
    record = PendingRecord(local_snapshot_id=5)
    queue.put(record)

    assert queue.remove(record.batch_id) == 1
    assert queue.remove(record.batch_id) == 0
    assert queue.count() == 0
    assert queue.find(5) is None


def test_purge_removes_only_strictly_older_records(queue):
    now = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
    retention = timedelta(days=7)

    boundary = PendingRecord(local_snapshot_id=1, created_at=now - retention)
    older = PendingRecord(local_snapshot_id=2, created_at=now - retention - timedelta(seconds=1))
    older_retried = PendingRecord(local_snapshot_id=3, created_at=now - timedelta(days=30), retry_count=2)
    fresh = PendingRecord(local_snapshot_id=4, created_at=now - timedelta(hours=1))
    for r in (boundary, older, older_retried, fresh):
        queue.put(r)

    assert queue.purge_older_than(retention, now=now) == 2
    remaining = {r.local_snapshot_id for r in queue.list_pending()}
    assert remaining == {1, 4}


def test_local_snapshot_ids_are_unique_and_persisted(queue):
    assert queue.next_local_snapshot_id() == 1
    assert queue.next_local_snapshot_id() == 2
    assert (queue.path / COUNTER_FILE).read_text(encoding="utf-8") == "2"

    reopened = DurableQueue(queue.path)
    assert reopened.next_local_snapshot_id() == 3


def test_counter_never_falls_behind_pending_records(queue):
    queue.put(PendingRecord(local_snapshot_id=10))
    (queue.path / COUNTER_FILE).unlink()

    reopened = DurableQueue(queue.path)
    assert reopened.next_local_snapshot_id() == 11


def test_corrupt_counter_file_is_rebuilt(queue):
    queue.put(PendingRecord(local_snapshot_id=4))
    (queue.path / COUNTER_FILE).write_text("not-a-number", encoding="utf-8")

    reopened = DurableQueue(queue.path)
    assert reopened.next_local_snapshot_id() == 5


def test_unreadable_files_are_skipped(queue):
    good = PendingRecord(local_snapshot_id=1)
    queue.put(good)
    (queue.path / "snapshot_broken_20250101_000000.json").write_text("{not json", encoding="utf-8")

    pending = queue.list_pending()
    assert [r.batch_id for r in pending] == [good.batch_id]
    assert queue.count() == 2


def test_unusable_directory_raises_queue_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(QueueError) as excinfo:
        DurableQueue(blocker)
    assert excinfo.value.recoverable is False


def test_get_stats(queue):
    queue.put(PendingRecord(local_snapshot_id=1, created_at=datetime(2025, 1, 1, tzinfo=timezone.utc)))
    queue.put(PendingRecord(local_snapshot_id=2, created_at=datetime(2025, 1, 2, tzinfo=timezone.utc)))

    stats = queue.get_stats()
    assert stats["pending"] == 2
    assert stats["oldest_created_at"].startswith("2025-01-01")
    assert stats["newest_created_at"].startswith("2025-01-02")
    assert stats["last_local_snapshot_id"] == 2
