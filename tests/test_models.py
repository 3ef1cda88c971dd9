from __future__ import annotations

from datetime import timezone

from pcstats_agent.storage.models import PendingRecord, process_key, synthetic_process_id

from .helpers.fakes import make_process, make_system, make_temperature


def test_synthetic_process_id_is_deterministic_positive_31_bit():
    ids = {synthetic_process_id(f"proc{i}.exe", None) for i in range(200)}

    assert synthetic_process_id("chrome.exe", "C:\\chrome.exe") == synthetic_process_id("chrome.exe", "C:\\chrome.exe")
    assert all(0 < i <= 0x7FFFFFFF for i in ids)
    assert len(ids) > 190


def test_process_key_treats_missing_path_as_empty():
    assert process_key("a.exe", None) == process_key("a.exe", "") == "a.exe|"


def test_pending_record_survives_serialization():
    record = PendingRecord(local_snapshot_id=9, system_sample=make_system(), temperature_sample=make_temperature())
    record.add_process(77, make_process("chrome.exe"))
    record.sequence = 4
    record.retry_count = 1
    record.last_error = "timeout"

    assert PendingRecord.from_dict(record.to_dict()) == record


def test_pending_record_tolerates_unknown_keys_and_naive_timestamps():
    data = {
        "batch_id": "b1",
        "local_snapshot_id": 3,
        "created_at": "2025-03-01T10:00:00",
        "process_samples": [{"local_process_id": 5, "process_name": "x.exe", "pid": 1, "extra": True}],
        "future_field": "ignored",
    }

    record = PendingRecord.from_dict(data)

    assert record.created_at.tzinfo == timezone.utc
    assert record.system_sample is None
    assert record.sequence is None
    assert record.process_samples[0].local_process_id == 5
