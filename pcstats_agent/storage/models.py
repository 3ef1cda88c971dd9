"""
Measurement and Queue Records

Plain dataclasses shared by the collector, the stores and the offline queue.
Serialization uses snake_case keys and ISO-8601 UTC timestamps so queue
files stay readable and forward compatible (unknown keys are ignored).
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def process_key(process_name: str, process_path: Optional[str]) -> str:
    """Key used for process id maps: "<name>|<path or ''>"."""
    return f"{process_name}|{process_path or ''}"


def synthetic_process_id(process_name: str, process_path: Optional[str]) -> int:
    """
    Deterministic stand-in process id used while the store is unreachable.

    SHA-256 of the process key truncated to a positive 31-bit integer, so
    the same (name, path) maps to the same id across cycles and restarts.
    Distinct processes can collide; restore resolves processes by
    (name, path), so a collision only conflates the ids handed to callers
    during the outage.

    A real store id can also equal a synthetic id handed out earlier. The
    gateway then re-resolves it by (name, path), which costs one extra
    lookup and yields the same real id.
    """
    digest = hashlib.sha256(process_key(process_name, process_path).encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") & 0x7FFFFFFF or 1


@dataclass
class SystemSample:
    """System-wide CPU and memory for one cycle"""
    cpu_percent: Optional[float] = None
    used_memory_mb: Optional[int] = None
    available_memory_mb: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "cpu_percent": self.cpu_percent,
            "used_memory_mb": self.used_memory_mb,
            "available_memory_mb": self.available_memory_mb,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SystemSample":
        return cls(
            cpu_percent=data.get("cpu_percent"),
            used_memory_mb=data.get("used_memory_mb"),
            available_memory_mb=data.get("available_memory_mb"),
        )


@dataclass
class ProcessSample:
    """Resource usage of one process"""
    process_name: str
    pid: int
    cpu_percent: float = 0.0
    memory_mb: int = 0  # working set
    private_memory_mb: int = 0
    virtual_memory_mb: int = 0
    thread_count: int = 0
    handle_count: int = 0
    process_path: Optional[str] = None
    vram_mb: Optional[int] = None

    @property
    def key(self) -> str:
        return process_key(self.process_name, self.process_path)

    def to_dict(self) -> dict:
        return {
            "process_name": self.process_name,
            "process_path": self.process_path,
            "pid": self.pid,
            "cpu_percent": self.cpu_percent,
            "memory_mb": self.memory_mb,
            "private_memory_mb": self.private_memory_mb,
            "virtual_memory_mb": self.virtual_memory_mb,
            "vram_mb": self.vram_mb,
            "thread_count": self.thread_count,
            "handle_count": self.handle_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessSample":
        return cls(
            process_name=data["process_name"],
            process_path=data.get("process_path"),
            pid=int(data.get("pid", 0)),
            cpu_percent=float(data.get("cpu_percent", 0.0)),
            memory_mb=int(data.get("memory_mb", 0)),
            private_memory_mb=int(data.get("private_memory_mb", 0)),
            virtual_memory_mb=int(data.get("virtual_memory_mb", 0)),
            vram_mb=data.get("vram_mb"),
            thread_count=int(data.get("thread_count", 0)),
            handle_count=int(data.get("handle_count", 0)),
        )


@dataclass
class TemperatureSample:
    """CPU sensor readings (degrees C) for one cycle"""
    cpu_tctl_tdie: Optional[float] = None
    cpu_die_average: Optional[float] = None
    cpu_ccd1_tdie: Optional[float] = None
    cpu_ccd2_tdie: Optional[float] = None
    thermal_limit_percent: Optional[float] = None
    thermal_throttling: Optional[bool] = None

    def has_readings(self) -> bool:
        return any(
            v is not None
            for v in (self.cpu_tctl_tdie, self.cpu_die_average, self.cpu_ccd1_tdie, self.cpu_ccd2_tdie)
        )

    def to_dict(self) -> dict:
        return {
            "cpu_tctl_tdie": self.cpu_tctl_tdie,
            "cpu_die_average": self.cpu_die_average,
            "cpu_ccd1_tdie": self.cpu_ccd1_tdie,
            "cpu_ccd2_tdie": self.cpu_ccd2_tdie,
            "thermal_limit_percent": self.thermal_limit_percent,
            "thermal_throttling": self.thermal_throttling,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TemperatureSample":
        return cls(
            cpu_tctl_tdie=data.get("cpu_tctl_tdie"),
            cpu_die_average=data.get("cpu_die_average"),
            cpu_ccd1_tdie=data.get("cpu_ccd1_tdie"),
            cpu_ccd2_tdie=data.get("cpu_ccd2_tdie"),
            thermal_limit_percent=data.get("thermal_limit_percent"),
            thermal_throttling=data.get("thermal_throttling"),
        )


@dataclass
class ProcessEntry:
    """A queued process sample plus the id the caller was given for it"""
    local_process_id: int
    sample: ProcessSample

    def to_dict(self) -> dict:
        return {"local_process_id": self.local_process_id, **self.sample.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessEntry":
        return cls(
            local_process_id=int(data.get("local_process_id", 0)),
            sample=ProcessSample.from_dict(data),
        )


@dataclass
class PendingRecord:
    """
    One not-yet-committed snapshot cycle.

    A record is assembled from one or more gateway writes that share a
    local_snapshot_id. When system_sample is None the cycle's snapshot row
    already exists in the store under local_snapshot_id and only the
    process/temperature rows are pending.
    """
    local_snapshot_id: int
    batch_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    sequence: Optional[int] = None
    system_sample: Optional[SystemSample] = None
    process_samples: list[ProcessEntry] = field(default_factory=list)
    temperature_sample: Optional[TemperatureSample] = None
    retry_count: int = 0
    last_error: Optional[str] = None

    def add_process(self, local_process_id: int, sample: ProcessSample) -> None:
        self.process_samples.append(ProcessEntry(local_process_id, sample))

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "sequence": self.sequence,
            "local_snapshot_id": self.local_snapshot_id,
            "created_at": self.created_at.isoformat(),
            "system_sample": self.system_sample.to_dict() if self.system_sample else None,
            "process_samples": [p.to_dict() for p in self.process_samples],
            "temperature_sample": self.temperature_sample.to_dict() if self.temperature_sample else None,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingRecord":
        system = data.get("system_sample")
        temperature = data.get("temperature_sample")
        return cls(
            batch_id=str(data["batch_id"]),
            sequence=data.get("sequence"),
            local_snapshot_id=int(data["local_snapshot_id"]),
            created_at=parse_timestamp(data["created_at"]),
            system_sample=SystemSample.from_dict(system) if system else None,
            process_samples=[ProcessEntry.from_dict(p) for p in data.get("process_samples", [])],
            temperature_sample=TemperatureSample.from_dict(temperature) if temperature else None,
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
        )
