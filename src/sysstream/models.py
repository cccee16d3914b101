"""Data models for sysstream."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class MemoryStats:
    """Virtual memory usage in bytes."""

    total: int
    available: int
    used: int
    used_percent: float  # 0.0 - 100.0, passed through from psutil

    def to_wire(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "available": self.available,
            "used": self.used,
            "usedPercent": self.used_percent,
        }


@dataclass(slots=True, frozen=True)
class LoadAverage:
    """System load averaged over 1, 5 and 15 minutes."""

    load1: float
    load5: float
    load15: float

    def to_wire(self) -> dict[str, Any]:
        return {"load1": self.load1, "load5": self.load5, "load15": self.load15}


@dataclass(slots=True, frozen=True)
class DiskPartition:
    """Usage of one mounted partition."""

    device: str
    mountpoint: str
    fstype: str
    total: int
    used: int
    free: int
    used_percent: float

    def to_wire(self) -> dict[str, Any]:
        return {
            "device": self.device,
            "mountpoint": self.mountpoint,
            "fstype": self.fstype,
            "total": self.total,
            "used": self.used,
            "free": self.free,
            "usedPercent": self.used_percent,
        }


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable snapshot of a process state."""

    pid: int
    name: str
    status: str  # 'running', 'sleeping', 'zombie', etc.
    username: str
    cmdline: str
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_mb: float  # RSS in MiB
    memory_percent: float

    def to_wire(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "cpuPercent": self.cpu_percent,
            "memoryMB": self.memory_mb,
            "memoryPercent": self.memory_percent,
            "status": self.status,
            "username": self.username,
            "cmdline": self.cmdline,
        }


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    One complete set of host measurements for a single tick.

    Processes are kept ordered by CPU usage, highest first, no matter what
    order they were supplied in. Equal CPU values keep their input order.
    """

    hostname: str
    uptime_seconds: int
    memory: MemoryStats
    load_average: LoadAverage
    partitions: tuple[DiskPartition, ...] = field(default_factory=tuple)
    processes: tuple[ProcessInfo, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Frozen: normalize through object.__setattr__
        object.__setattr__(self, "partitions", tuple(self.partitions))
        object.__setattr__(self, "processes", sort_by_cpu(self.processes))

    def to_wire(self) -> dict[str, Any]:
        """Build the JSON object sent to clients for this snapshot."""
        return {
            "hostname": self.hostname,
            "uptime": self.uptime_seconds,
            "memory": self.memory.to_wire(),
            "load_average": self.load_average.to_wire(),
            "partitions": [partition.to_wire() for partition in self.partitions],
            "processes": [process.to_wire() for process in self.processes],
        }


def sort_by_cpu(processes: Iterable[ProcessInfo]) -> tuple[ProcessInfo, ...]:
    """Order processes by CPU usage, descending."""
    return tuple(sorted(processes, key=lambda p: p.cpu_percent, reverse=True))
