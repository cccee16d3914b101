"""Per-connection snapshot streaming for sysstream."""

import asyncio
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect, status

from sysstream.errors import TransportError
from sysstream.lifecycle import SessionRegistry, ShutdownState
from sysstream.models import Snapshot
from sysstream.monitor import Provider

log = structlog.get_logger(__name__)

# RFC 6455 limits the close reason to 123 bytes of UTF-8
MAX_CLOSE_REASON_BYTES = 123

SHUTDOWN_REASON = "server shutting down"

WireMessage = dict[str, Any]


def _truncate_reason(reason: str) -> str:
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_CLOSE_REASON_BYTES:
        return reason
    return encoded[:MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore")


@dataclass(slots=True, frozen=True)
class CloseNotification:
    """A WebSocket close frame to send instead of a snapshot."""

    code: int
    reason: str

    @classmethod
    def normal(cls, reason: str = "") -> "CloseNotification":
        return cls(status.WS_1000_NORMAL_CLOSURE, _truncate_reason(reason))

    @classmethod
    def internal_error(cls, exc: BaseException) -> "CloseNotification":
        description = str(exc) or type(exc).__name__
        return cls(status.WS_1011_INTERNAL_ERROR, _truncate_reason(description))


def render_tick(result: Snapshot | BaseException) -> WireMessage | CloseNotification:
    """
    Turn one provider result into what goes on the wire.

    A snapshot becomes its JSON message; a failure becomes an internal-error
    close carrying the failure description.
    """
    if isinstance(result, BaseException):
        return CloseNotification.internal_error(result)
    return result.to_wire()


def call_provider(provider: Provider) -> "asyncio.Future[Snapshot]":
    """
    Run the provider on a daemon thread and return a future for its result.

    Daemon threads are never joined at interpreter exit, so a provider call
    that hangs forever cannot keep the process alive after shutdown.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Snapshot] = loop.create_future()

    def deliver(result: Snapshot | None, error: Exception | None) -> None:
        if future.done():
            # Session was cancelled while the provider ran
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def target() -> None:
        result, error = None, None
        try:
            result = provider()
        except Exception as exc:
            error = exc
        try:
            loop.call_soon_threadsafe(deliver, result, error)
        except RuntimeError:
            # Event loop already closed; nobody is waiting
            pass

    threading.Thread(target=target, daemon=True, name="sysstream-provider").start()
    return future


class SessionState(Enum):
    """Liveness of a session's connection."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionEnd(Enum):
    """Why a session's send loop stopped."""

    CANCELLED = "cancelled"
    PEER_GONE = "peer_gone"
    PROVIDER_FAILED = "provider_failed"
    TRANSPORT_FAILED = "transport_failed"


class Session:
    """
    Streams snapshots to one client connection.

    The first snapshot is sent as soon as run() starts. After that the
    session waits for whichever comes first: the interval elapsing, the
    shared cancellation event, or the client going away. Sends never
    overlap; a slow send only delays the next tick.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        provider: Provider,
        registry: SessionRegistry,
        state: ShutdownState,
        interval: float,
    ) -> None:
        self._websocket = websocket
        self._provider = provider
        self._registry = registry
        self._cancelled = state.cancelled
        self._interval = interval
        self._state = SessionState.OPEN
        self._released = False
        self.sent = 0

        client = getattr(websocket, "client", None)
        peer = f"{client.host}:{client.port}" if client else "unknown"
        self._log = log.bind(client=peer)

    @classmethod
    def open(
        cls,
        websocket: WebSocket,
        *,
        provider: Provider,
        registry: SessionRegistry,
        state: ShutdownState,
        interval: float,
    ) -> "Session":
        """
        Register a new session for an upgraded connection.

        Raises:
            RegistryClosed: If the server is already draining.
        """
        registry.register()
        session = cls(
            websocket,
            provider=provider,
            registry=registry,
            state=state,
            interval=interval,
        )
        session._log.info("session opened")
        return session

    @property
    def state(self) -> SessionState:
        return self._state

    async def run(self) -> SessionEnd:
        """Drive the send loop until the session terminates."""
        peer_gone = asyncio.create_task(self._watch_peer(), name="session-peer")
        cancelled = asyncio.create_task(self._cancelled.wait(), name="session-cancel")
        end: SessionEnd | None = None

        try:
            end = await self._tick()
            while end is None:
                done, _ = await asyncio.wait(
                    {peer_gone, cancelled},
                    timeout=self._interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if peer_gone in done:
                    end = SessionEnd.PEER_GONE
                elif cancelled in done:
                    await self._close(CloseNotification.normal(SHUTDOWN_REASON))
                    end = SessionEnd.CANCELLED
                else:
                    end = await self._tick()
            return end
        finally:
            peer_gone.cancel()
            cancelled.cancel()
            self._state = SessionState.CLOSED
            self.release()
            self._log.info(
                "session closed",
                reason=end.value if end else "aborted",
                sent=self.sent,
            )

    def release(self) -> None:
        """Deregister from the registry. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        self._registry.deregister()

    async def _tick(self) -> SessionEnd | None:
        """Produce and send one snapshot. Returns the end reason on failure."""
        try:
            result: Snapshot | BaseException = await call_provider(self._provider)
        except Exception as exc:
            self._log.warning("provider failed", error=str(exc))
            result = exc

        message = render_tick(result)
        if isinstance(message, CloseNotification):
            await self._close(message)
            return SessionEnd.PROVIDER_FAILED

        try:
            await self._websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            error = TransportError(f"send failed: {exc}")
            self._log.warning("transport failed", error=str(error))
            await self._close(CloseNotification.internal_error(error))
            return SessionEnd.TRANSPORT_FAILED

        self.sent += 1
        return None

    async def _close(self, notification: CloseNotification) -> None:
        """Send a best-effort close frame."""
        if self._state is not SessionState.OPEN:
            return
        self._state = SessionState.CLOSING
        try:
            await self._websocket.close(code=notification.code, reason=notification.reason)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self._log.debug("close frame not delivered", error=str(exc))
        self._state = SessionState.CLOSED

    async def _watch_peer(self) -> None:
        """Discard inbound messages until the client disconnects."""
        try:
            while True:
                message = await self._websocket.receive()
                if message["type"] == "websocket.disconnect":
                    self._log.debug("client disconnected", code=message.get("code"))
                    return
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self._log.debug("receive failed", error=str(exc))
