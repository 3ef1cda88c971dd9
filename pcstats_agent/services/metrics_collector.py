"""
Metrics Collector

Samples one monitoring cycle with psutil:
- System CPU and memory usage
- Per-process CPU, memory, threads and handles
- CPU temperatures (AMD k10temp or Intel coretemp sensors)

Process CPU usage is measured between consecutive calls, so the collector
keeps a psutil.Process handle per pid. The first sample of a new process
reads 0% CPU.
"""

import os
from typing import Optional

import psutil

from ..common.logging_setup import get_service_logger
from ..storage.models import ProcessSample, SystemSample, TemperatureSample

logger = get_service_logger("metrics_collector")

MB = 1024 * 1024

# Sensor chips checked for CPU temperatures, in order
CPU_SENSOR_CHIPS = ("k10temp", "coretemp", "zenpower", "cpu_thermal")


class MetricsCollector:
    """Collects system, process and temperature metrics"""

    def __init__(self):
        self._cpu_count = psutil.cpu_count() or 1
        self._processes: dict[int, psutil.Process] = {}
        # Prime system-wide CPU measurement
        psutil.cpu_percent(interval=None)

    # ============================================
    # SYSTEM
    # ============================================

    def collect_system(self) -> SystemSample:
        """System-wide CPU % since the last call and memory in MB"""
        mem = psutil.virtual_memory()
        return SystemSample(
            cpu_percent=round(psutil.cpu_percent(interval=None), 1),
            used_memory_mb=int((mem.total - mem.available) / MB),
            available_memory_mb=int(mem.available / MB),
        )

    # ============================================
    # PROCESSES
    # ============================================

    def collect_processes(self) -> list[ProcessSample]:
        """
        Sample every accessible process.

        Processes that exit or deny access mid-sample are skipped; handles
        for pids no longer running are dropped.
        """
        samples = []
        seen = set()

        for proc in psutil.process_iter():
            pid = proc.pid
            seen.add(pid)

            cached = self._processes.get(pid)
            # Process equality includes create time, so a reused pid gets a fresh handle
            if cached is None or cached != proc:
                cached = proc
                self._processes[pid] = proc

            sample = self._sample_process(cached)
            if sample is not None:
                samples.append(sample)

        for pid in list(self._processes):
            if pid not in seen:
                del self._processes[pid]

        return samples

    def _sample_process(self, proc: psutil.Process) -> Optional[ProcessSample]:
        try:
            with proc.oneshot():
                name = proc.name()
                if not name:
                    return None
                mem = proc.memory_info()
                cpu = proc.cpu_percent(interval=None) / self._cpu_count
                threads = proc.num_threads()
                handles = self._handle_count(proc)
                path = self._exe_path(proc)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            self._processes.pop(proc.pid, None)
            return None
        except psutil.AccessDenied:
            return None

        return ProcessSample(
            process_name=name,
            process_path=path,
            pid=proc.pid,
            cpu_percent=round(cpu, 2),
            memory_mb=int(mem.rss / MB),
            private_memory_mb=int(self._private_bytes(mem) / MB),
            virtual_memory_mb=int(mem.vms / MB),
            thread_count=threads,
            handle_count=handles,
        )

    @staticmethod
    def _private_bytes(mem) -> int:
        """Private bytes on Windows; resident minus shared elsewhere"""
        private = getattr(mem, "private", None)
        if private is not None:
            return private
        return max(mem.rss - getattr(mem, "shared", 0), 0)

    @staticmethod
    def _handle_count(proc: psutil.Process) -> int:
        """Open handles (fds off Windows); 0 when the process is not ours to inspect"""
        try:
            if os.name == "nt":
                return proc.num_handles()
            return proc.num_fds()
        except psutil.AccessDenied:
            return 0

    @staticmethod
    def _exe_path(proc: psutil.Process) -> Optional[str]:
        try:
            return proc.exe() or None
        except (psutil.AccessDenied, psutil.ZombieProcess, FileNotFoundError):
            return None

    # ============================================
    # TEMPERATURES
    # ============================================

    def collect_temperatures(self) -> Optional[TemperatureSample]:
        """CPU temperatures, or None when no supported sensor is present"""
        try:
            sensors = psutil.sensors_temperatures()
        except (AttributeError, OSError) as e:
            # sensors_temperatures is not implemented on Windows and macOS
            logger.debug(f"Temperature sensors unavailable: {e}")
            return None

        for chip in CPU_SENSOR_CHIPS:
            entries = sensors.get(chip)
            if entries:
                sample = self._temperature_sample(entries)
                if sample.has_readings():
                    return sample
        return None

    @staticmethod
    def _temperature_sample(entries) -> TemperatureSample:
        by_label = {entry.label: entry for entry in entries}

        main = by_label.get("Tdie") or by_label.get("Tctl") or by_label.get("Package id 0") or entries[0]
        ccd1 = by_label.get("Tccd1")
        ccd2 = by_label.get("Tccd2")

        die_readings = [
            entry.current for entry in entries
            if entry.label.startswith("Tccd") or entry.label.startswith("Core")
        ]
        die_average = round(sum(die_readings) / len(die_readings), 1) if die_readings else None

        limit_percent = None
        throttling = None
        if main.high:
            limit_percent = round(main.current / main.high * 100, 1)
            throttling = main.current >= main.high

        return TemperatureSample(
            cpu_tctl_tdie=main.current,
            cpu_die_average=die_average,
            cpu_ccd1_tdie=ccd1.current if ccd1 else None,
            cpu_ccd2_tdie=ccd2.current if ccd2 else None,
            thermal_limit_percent=limit_percent,
            thermal_throttling=throttling,
        )

    def get_stats(self) -> dict:
        return {"tracked_processes": len(self._processes), "cpu_count": self._cpu_count}
