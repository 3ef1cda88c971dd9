from __future__ import annotations

import contextlib
from collections import namedtuple

import psutil

from pcstats_agent.services import metrics_collector as mc
from pcstats_agent.services.metrics_collector import MB, MetricsCollector

Sensor = namedtuple("Sensor", "label current high critical")
Memory = namedtuple("Memory", "rss vms shared")
VirtualMemory = namedtuple("VirtualMemory", "total available percent")


class FakeProcess:
    def __init__(self, pid, name="app.exe", cpu=20.0, rss_mb=300, shared_mb=100, exe="/usr/bin/app", deny=False):
        self.pid = pid
        self._name = name
        self._cpu = cpu
        self._mem = Memory(rss_mb * MB, rss_mb * 4 * MB, shared_mb * MB)
        self._exe = exe
        self._deny = deny

    def __eq__(self, other):
        return isinstance(other, FakeProcess) and other.pid == self.pid

    def __hash__(self):
        return hash(self.pid)

    def oneshot(self):
        return contextlib.nullcontext()

    def name(self):
        if self._deny:
            raise psutil.AccessDenied(self.pid)
        return self._name

    def memory_info(self):
        return self._mem

    def cpu_percent(self, interval=None):
        return self._cpu

    def num_threads(self):
        return 8

    def num_fds(self):
        return 30

    def num_handles(self):
        return 30

    def exe(self):
        return self._exe


def _collector(monkeypatch, cpu_count=2):
    monkeypatch.setattr(mc.psutil, "cpu_count", lambda: cpu_count)
    monkeypatch.setattr(mc.psutil, "cpu_percent", lambda interval=None: 37.5)
    return MetricsCollector()


def test_collect_system(monkeypatch):
    collector = _collector(monkeypatch)
    monkeypatch.setattr(mc.psutil, "virtual_memory", lambda: VirtualMemory(16384 * MB, 4096 * MB, 75.0))

    sample = collector.collect_system()

    assert sample.cpu_percent == 37.5
    assert sample.used_memory_mb == 12288
    assert sample.available_memory_mb == 4096


def test_collect_processes_normalizes_cpu_and_prunes_exited(monkeypatch):
    collector = _collector(monkeypatch, cpu_count=4)
    running = [FakeProcess(1, "a.exe", cpu=40.0), FakeProcess(2, "b.exe"), FakeProcess(3, "locked.exe", deny=True)]
    monkeypatch.setattr(mc.psutil, "process_iter", lambda: iter(list(running)))

    samples = collector.collect_processes()

    assert [s.process_name for s in samples] == ["a.exe", "b.exe"]
    first = samples[0]
    assert first.cpu_percent == 10.0
    assert first.memory_mb == 300
    assert first.private_memory_mb == 200
    assert first.virtual_memory_mb == 1200
    assert first.thread_count == 8
    assert first.handle_count == 30
    assert first.process_path == "/usr/bin/app"
    assert collector.get_stats()["tracked_processes"] == 3

    running[:] = [running[0]]
    collector.collect_processes()
    assert collector.get_stats()["tracked_processes"] == 1


def test_collect_temperatures_reads_k10temp(monkeypatch):
    collector = _collector(monkeypatch)
    sensors = {
        "k10temp": [
            Sensor("Tctl", 72.0, 95.0, None),
            Sensor("Tccd1", 68.0, None, None),
            Sensor("Tccd2", 64.0, None, None),
        ]
    }
    monkeypatch.setattr(mc.psutil, "sensors_temperatures", lambda: sensors, raising=False)

    sample = collector.collect_temperatures()

    assert sample.cpu_tctl_tdie == 72.0
    assert sample.cpu_ccd1_tdie == 68.0
    assert sample.cpu_ccd2_tdie == 64.0
    assert sample.cpu_die_average == 66.0
    assert sample.thermal_limit_percent == 75.8
    assert sample.thermal_throttling is False


def test_collect_temperatures_without_sensors(monkeypatch):
    collector = _collector(monkeypatch)

    def unsupported():
        raise AttributeError("sensors_temperatures")

    monkeypatch.setattr(mc.psutil, "sensors_temperatures", unsupported, raising=False)
    assert collector.collect_temperatures() is None

    monkeypatch.setattr(mc.psutil, "sensors_temperatures", lambda: {"nvme": [Sensor("Composite", 40.0, 80.0, 90.0)]},
                        raising=False)
    assert collector.collect_temperatures() is None


class FdDeniedProcess(FakeProcess):
    def num_fds(self):
        raise psutil.AccessDenied(self.pid)

    def num_handles(self):
        raise psutil.AccessDenied(self.pid)


def test_denied_handle_count_keeps_the_sample(monkeypatch):
    collector = _collector(monkeypatch, cpu_count=1)
    proc = FdDeniedProcess(42, "postgres", cpu=50.0, rss_mb=900)

    sample = collector._sample_process(proc)

    assert sample is not None
    assert sample.process_name == "postgres"
    assert sample.cpu_percent == 50.0
    assert sample.memory_mb == 900
    assert sample.handle_count == 0
