"""Metrics provider for sysstream."""

import socket
import time
from collections.abc import Callable

import psutil
import structlog

from sysstream.errors import ProviderError
from sysstream.models import DiskPartition, LoadAverage, MemoryStats, ProcessInfo, Snapshot

log = structlog.get_logger(__name__)

Provider = Callable[[], Snapshot]

# Attributes to fetch in oneshot
PROCESS_ATTRS = [
    "pid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_info",
    "cmdline",
]


def collect_snapshot() -> Snapshot:
    """
    Collect a snapshot of the current system state.

    Partitions and processes that cannot be inspected are left out of the
    snapshot. A failure of any of the host-wide calls is raised as
    ProviderError.
    """
    try:
        hostname = socket.gethostname()

        # Collect uptime
        uptime = max(0, int(time.time() - psutil.boot_time()))

        # Collect memory info
        mem = psutil.virtual_memory()

        # Collect load average
        load1, load5, load15 = psutil.getloadavg()

        partitions = collect_partitions()
        processes = collect_processes()
    except (OSError, psutil.Error) as exc:
        raise ProviderError(f"collecting snapshot: {exc}") from exc

    return Snapshot(
        hostname=hostname,
        uptime_seconds=uptime,
        memory=MemoryStats(
            total=mem.total,
            available=mem.available,
            used=mem.used,
            used_percent=mem.percent,
        ),
        load_average=LoadAverage(load1=load1, load5=load5, load15=load15),
        partitions=partitions,
        processes=processes,
    )


def collect_partitions() -> list[DiskPartition]:
    """Collect usage for every mounted physical partition."""
    partitions: list[DiskPartition] = []

    for part in psutil.disk_partitions(all=False):
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (OSError, psutil.Error):
            # Unreadable mount (permissions, stale network share): skip it
            log.debug("partition skipped", mountpoint=part.mountpoint)
            continue

        partitions.append(
            DiskPartition(
                device=part.device,
                mountpoint=part.mountpoint,
                fstype=part.fstype,
                total=usage.total,
                used=usage.used,
                free=usage.free,
                used_percent=usage.percent,
            )
        )

    return partitions


def collect_processes() -> list[ProcessInfo]:
    """
    Collect snapshots of all running processes.

    Uses psutil.process_iter() with oneshot() context manager for efficiency.
    Processes without a readable name or memory info are skipped, as are
    processes that die mid-poll.
    """
    processes: list[ProcessInfo] = []

    for proc in psutil.process_iter(attrs=PROCESS_ATTRS, ad_value=None):
        try:
            with proc.oneshot():
                info = proc.info

                name = info.get("name")
                mem_info = info.get("memory_info")
                if not name or mem_info is None:
                    continue

                cmdline = info.get("cmdline") or []

                processes.append(
                    ProcessInfo(
                        pid=info.get("pid", proc.pid),
                        name=name,
                        status=info.get("status") or "",
                        username=info.get("username") or "",
                        cmdline=" ".join(cmdline),
                        cpu_percent=info.get("cpu_percent") or 0.0,
                        memory_mb=mem_info.rss / 1024 / 1024,
                        memory_percent=info.get("memory_percent") or 0.0,
                    )
                )

        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    processes.sort(key=lambda p: p.cpu_percent, reverse=True)
    return processes
