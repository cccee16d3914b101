"""Tests for sysstream data models."""

import json

import pytest

from conftest import make_process, make_snapshot
from sysstream.models import DiskPartition, MemoryStats, ProcessInfo, Snapshot, sort_by_cpu


def test_process_info_creation():
    """Test ProcessInfo dataclass creation."""
    process = ProcessInfo(
        pid=123,
        name="test_process",
        status="running",
        username="testuser",
        cmdline="/usr/bin/test --flag",
        cpu_percent=50.0,
        memory_mb=20.5,
        memory_percent=25.0,
    )

    assert process.pid == 123
    assert process.name == "test_process"
    assert process.status == "running"
    assert process.username == "testuser"
    assert process.cmdline == "/usr/bin/test --flag"
    assert process.cpu_percent == 50.0
    assert process.memory_mb == 20.5
    assert process.memory_percent == 25.0


def test_process_info_is_frozen():
    """Test that ProcessInfo is immutable (frozen)."""
    process = make_process(1, "init", 0.1)

    with pytest.raises(AttributeError):
        process.pid = 999  # type: ignore[misc]


def test_snapshot_uses_slots():
    """Test Snapshot uses __slots__ for memory efficiency."""
    snapshot = make_snapshot()

    # Slots-based dataclasses don't have __dict__
    assert not hasattr(snapshot, "__dict__")


def test_snapshot_is_frozen():
    """Test a Snapshot cannot be changed once built."""
    snapshot = make_snapshot()

    with pytest.raises(AttributeError):
        snapshot.hostname = "other"  # type: ignore[misc]


def test_snapshot_orders_processes_by_cpu():
    """Test processes supplied in ascending CPU order come out descending."""
    a = make_process(1, "A", 10.0)
    b = make_process(2, "B", 90.0)

    snapshot = make_snapshot(processes=(a, b))

    assert snapshot.processes == (b, a)


def test_snapshot_normalizes_sequences_to_tuples():
    """Test lists handed to Snapshot are stored as tuples."""
    snapshot = Snapshot(
        hostname="h1",
        uptime_seconds=1,
        memory=MemoryStats(total=1, available=1, used=0, used_percent=0.0),
        load_average=make_snapshot().load_average,
        partitions=[],  # type: ignore[arg-type]
        processes=[make_process(1, "a", 1.0)],  # type: ignore[arg-type]
    )

    assert isinstance(snapshot.partitions, tuple)
    assert isinstance(snapshot.processes, tuple)


def test_sort_by_cpu_keeps_ties_in_input_order():
    """Test equal CPU values keep the order they were given in."""
    first = make_process(1, "first", 5.0)
    second = make_process(2, "second", 5.0)
    busy = make_process(3, "busy", 50.0)

    assert sort_by_cpu([first, busy, second]) == (busy, first, second)


class TestWireFormat:
    """Tests for Snapshot.to_wire."""

    def test_top_level_keys(self):
        """Test the wire message has exactly the documented keys."""
        wire = make_snapshot().to_wire()

        assert set(wire) == {
            "hostname",
            "uptime",
            "memory",
            "load_average",
            "partitions",
            "processes",
        }

    def test_minimal_snapshot_matches_fields(self):
        """Test a snapshot with no partitions or processes serializes exactly."""
        wire = make_snapshot().to_wire()

        assert wire == {
            "hostname": "h1",
            "uptime": 100,
            "memory": {"total": 1000, "available": 600, "used": 400, "usedPercent": 40.0},
            "load_average": {"load1": 1.0, "load5": 1.0, "load15": 1.0},
            "partitions": [],
            "processes": [],
        }

    def test_empty_sequences_encode_as_json_arrays(self):
        """Test empty partitions and processes become [] in JSON, not null."""
        decoded = json.loads(json.dumps(make_snapshot().to_wire()))

        assert decoded["partitions"] == []
        assert decoded["processes"] == []

    def test_process_keys(self):
        """Test process entries use the client-facing key names."""
        wire = make_snapshot(processes=(make_process(7, "sshd", 1.5),)).to_wire()

        assert wire["processes"] == [
            {
                "pid": 7,
                "name": "sshd",
                "cpuPercent": 1.5,
                "memoryMB": 12.5,
                "memoryPercent": 0.3,
                "status": "running",
                "username": "tester",
                "cmdline": "/usr/bin/sshd",
            }
        ]

    def test_partition_keys(self):
        """Test partition entries use the client-facing key names."""
        partition = DiskPartition(
            device="/dev/sda1",
            mountpoint="/",
            fstype="ext4",
            total=100,
            used=60,
            free=40,
            used_percent=60.0,
        )

        assert partition.to_wire() == {
            "device": "/dev/sda1",
            "mountpoint": "/",
            "fstype": "ext4",
            "total": 100,
            "used": 60,
            "free": 40,
            "usedPercent": 60.0,
        }

    def test_process_order_survives_serialization(self):
        """Test the serialized process list is ordered by CPU, descending."""
        processes = tuple(make_process(pid, f"p{pid}", float(pid % 7)) for pid in range(1, 30))
        wire = make_snapshot(processes=processes).to_wire()

        cpu = [entry["cpuPercent"] for entry in wire["processes"]]
        assert cpu == sorted(cpu, reverse=True)
