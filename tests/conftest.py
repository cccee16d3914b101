"""Shared fixtures for sysstream tests."""

import asyncio
import time
from collections.abc import Callable
from typing import Any

import pytest
from fastapi import WebSocketDisconnect

from sysstream.errors import ProviderError
from sysstream.lifecycle import SessionRegistry, ShutdownState
from sysstream.models import LoadAverage, MemoryStats, ProcessInfo, Snapshot


def make_process(pid: int, name: str, cpu_percent: float) -> ProcessInfo:
    return ProcessInfo(
        pid=pid,
        name=name,
        status="running",
        username="tester",
        cmdline=f"/usr/bin/{name}",
        cpu_percent=cpu_percent,
        memory_mb=12.5,
        memory_percent=0.3,
    )


def make_snapshot(processes: tuple[ProcessInfo, ...] = ()) -> Snapshot:
    return Snapshot(
        hostname="h1",
        uptime_seconds=100,
        memory=MemoryStats(total=1000, available=600, used=400, used_percent=40.0),
        load_average=LoadAverage(load1=1.0, load5=1.0, load15=1.0),
        partitions=(),
        processes=processes,
    )


class FakeWebSocket:
    """Records what a session sends; stands in for a Starlette WebSocket."""

    def __init__(
        self,
        send_delay: float = 0.0,
        fail_after: int | None = None,
        fail_accept: bool = False,
    ) -> None:
        self.client = None
        self.accepted = False
        self.messages: list[dict[str, Any]] = []
        self.send_times: list[float] = []
        self.close_calls = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._send_delay = send_delay
        self._fail_after = fail_after
        self._fail_accept = fail_accept
        self._inbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def accept(self) -> None:
        if self._fail_accept:
            raise WebSocketDisconnect(code=1006)
        self.accepted = True

    async def send_json(self, data: dict[str, Any]) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._send_delay:
                await asyncio.sleep(self._send_delay)
            if self._fail_after is not None and len(self.messages) >= self._fail_after:
                raise WebSocketDisconnect(code=1006)
            self.messages.append(data)
            self.send_times.append(time.monotonic())
        finally:
            self.in_flight -= 1

    async def receive(self) -> dict[str, Any]:
        return await self._inbound.get()

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_calls += 1
        self.close_code = code
        self.close_reason = reason

    def push_text(self, text: str) -> None:
        self._inbound.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self, code: int = 1001) -> None:
        self._inbound.put_nowait({"type": "websocket.disconnect", "code": code})


class ScriptedProvider:
    """Provider returning a fixed snapshot, optionally failing on one call."""

    def __init__(self, snapshot: Snapshot, fail_on: int | None = None) -> None:
        self.snapshot = snapshot
        self.fail_on = fail_on
        self.calls = 0

    def __call__(self) -> Snapshot:
        self.calls += 1
        if self.calls == self.fail_on:
            raise ProviderError("disk exploded")
        return self.snapshot


class CountingRegistry(SessionRegistry):
    """SessionRegistry that counts deregistrations."""

    def __init__(self) -> None:
        super().__init__()
        self.deregistered = 0

    def deregister(self) -> None:
        self.deregistered += 1
        super().deregister()


@pytest.fixture
def snapshot() -> Snapshot:
    return make_snapshot()


@pytest.fixture
def state() -> ShutdownState:
    return ShutdownState()


@pytest.fixture
def registry() -> CountingRegistry:
    return CountingRegistry()


@pytest.fixture
def fake_ws() -> Callable[..., FakeWebSocket]:
    """Factory for FakeWebSocket instances."""
    return FakeWebSocket


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll a predicate on the event loop until it holds or times out."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait_until
