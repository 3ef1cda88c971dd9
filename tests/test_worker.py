from __future__ import annotations

import asyncio

from pcstats_agent.common.config import load_agent_config
from pcstats_agent.main import build_store
from pcstats_agent.storage.gateway import IngestionGateway
from pcstats_agent.storage.sqlite_store import SqliteStore
from pcstats_agent.worker import Worker, filter_processes

from .helpers.fakes import make_process, make_system, make_temperature


class FakeCollector:
    def __init__(self, processes, temperature=None):
        self.processes = processes
        self.temperature = temperature

    def collect_system(self):
        return make_system(12.5)

    def collect_processes(self):
        return list(self.processes)

    def collect_temperatures(self):
        return self.temperature

    def get_stats(self):
        return {"tracked_processes": len(self.processes)}


def _config(**cleanup):
    return load_agent_config(
        {
            "monitoring": {"minimum_cpu_usage_percent": 5.0, "minimum_private_memory_mb": 100},
            "cleanup": {"retention_days": 3, **cleanup},
            "health": {"enabled": False},
        },
        env={},
    )


def test_filter_keeps_processes_meeting_either_threshold():
    busy = make_process("busy.exe", cpu=5.0, private_mb=10)
    large = make_process("large.exe", cpu=0.0, private_mb=100)
    idle = make_process("idle.exe", cpu=4.9, private_mb=99)

    assert filter_processes([busy, large, idle], 5.0, 100) == [busy, large]


def test_cycle_stores_filtered_processes_and_temperature(fake_store):
    processes = [
        make_process("chrome.exe", cpu=30.0),
        make_process("idle.exe", cpu=0.1, private_mb=5),
        make_process("vm.exe", cpu=0.0, private_mb=4000),
    ]
    worker = Worker(_config(), fake_store, collector=FakeCollector(processes, make_temperature()))

    snapshot_id = asyncio.run(worker.run_cycle())

    assert snapshot_id == 1
    stored = sorted(sample.process_name for _, _, sample in fake_store.process_rows)
    assert stored == ["chrome.exe", "vm.exe"]
    assert fake_store.snapshots[1]["cpu_percent"] == 12.5
    assert 1 in fake_store.temperatures
    assert worker.get_status()["cycles"] == 1


def test_cleanup_runs_once_per_interval(fake_store):
    worker = Worker(_config(cleanup_interval_hours=24), fake_store, collector=FakeCollector([]))

    async def run():
        await worker.run_cycle()
        await worker.run_cycle()

    asyncio.run(run())
    assert fake_store.cleanups == [3]


def test_cleanup_disabled(fake_store):
    worker = Worker(_config(enable_auto_cleanup=False), fake_store, collector=FakeCollector([]))

    asyncio.run(worker.run_cycle())
    assert fake_store.cleanups == []


def test_cycle_recorded_offline_while_store_down(fake_store, queue):
    gateway = IngestionGateway(fake_store, queue)
    worker = Worker(_config(), gateway, collector=FakeCollector([make_process("chrome.exe")]))
    fake_store.down = True

    local_id = asyncio.run(worker.run_cycle())

    record = queue.find(local_id)
    assert record is not None
    assert [e.sample.process_name for e in record.process_samples] == ["chrome.exe"]
    status = worker.get_status()
    assert status["gateway"]["mode"] == "offline"
    assert status["queue"]["pending"] == 1


def test_build_store_wraps_backend_in_gateway(tmp_path):
    data = {
        "store": {"backend": "sqlite", "sqlite_path": str(tmp_path / "a.db")},
        "offline_storage": {"path": str(tmp_path / "queue"), "max_restore_attempts": 5},
    }

    store = build_store(load_agent_config(data, env={}))
    assert isinstance(store, IngestionGateway)
    assert isinstance(store.store, SqliteStore)
    assert store.reconciler.max_attempts == 5

    data["offline_storage"]["enabled"] = False
    assert isinstance(build_store(load_agent_config(data, env={})), SqliteStore)
