"""
Shutdown coordination for sysstream.

The process moves through a single sequence of phases:

    RUNNING -> DRAINING -> STOPPED

While running, sessions register freely. A termination request starts
draining: the registry refuses new sessions, every session observes the
shared cancellation event, and the coordinator waits a bounded grace period
for the registry to empty. The result records whether draining finished
gracefully or was forced by the grace period running out.
"""

import asyncio
import inspect
import signal
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from sysstream.errors import DrainTimeout, RegistryClosed, ShutdownError

log = structlog.get_logger(__name__)

DEFAULT_GRACE_PERIOD = 20.0


class Phase(Enum):
    """Process-wide shutdown phase."""

    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


_NEXT_PHASE = {Phase.RUNNING: Phase.DRAINING, Phase.DRAINING: Phase.STOPPED}


class ShutdownState:
    """
    Authoritative shutdown phase shared by the server and every session.

    The cancellation event is the single broadcast all sessions wait on.
    """

    def __init__(self) -> None:
        """Initialize ShutdownState in the RUNNING phase."""
        self._lock = threading.Lock()
        self._phase = Phase.RUNNING
        self.cancelled = asyncio.Event()

    @property
    def phase(self) -> Phase:
        """Get the current phase."""
        with self._lock:
            return self._phase

    @property
    def is_running(self) -> bool:
        """Check if new sessions may still be opened."""
        return self.phase is Phase.RUNNING

    def advance(self, phase: Phase) -> None:
        """
        Move to the next phase.

        Args:
            phase: The phase to enter. Must directly follow the current one.

        Raises:
            ShutdownError: If the transition would skip or revisit a phase.
        """
        with self._lock:
            if _NEXT_PHASE.get(self._phase) is not phase:
                raise ShutdownError(
                    f"illegal transition {self._phase.value} -> {phase.value}"
                )
            self._phase = phase

    def cancel(self) -> None:
        """Broadcast cancellation to every session."""
        self.cancelled.set()


class SessionRegistry:
    """Thread-safe count of active sessions, used for shutdown draining."""

    def __init__(self) -> None:
        """Initialize an empty, open registry."""
        self._cond = threading.Condition()
        self._active = 0
        self._closed = False

    @property
    def active(self) -> int:
        """Get the number of registered sessions."""
        with self._cond:
            return self._active

    @property
    def closed(self) -> bool:
        """Check if the registry refuses new sessions."""
        with self._cond:
            return self._closed

    def register(self) -> None:
        """
        Count a new session.

        Raises:
            RegistryClosed: If draining already began.
        """
        with self._cond:
            if self._closed:
                raise RegistryClosed("server is shutting down")
            self._active += 1

    def deregister(self) -> None:
        """Remove a session from the count. Valid in any phase."""
        with self._cond:
            if self._active == 0:
                raise RuntimeError("deregister() called with no active sessions")
            self._active -= 1
            if self._active == 0:
                self._cond.notify_all()

    def close(self) -> None:
        """Refuse all further registrations."""
        with self._cond:
            self._closed = True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until no sessions are active.

        Args:
            timeout: Maximum time to wait (seconds). None waits forever.

        Returns:
            True if the registry emptied, False if the timeout elapsed first.
        """
        return self.wait_remaining(timeout) == 0

    def wait_remaining(self, timeout: float | None = None) -> int:
        """
        Block until no sessions are active or the timeout elapses.

        Returns:
            The active count read under the same lock hold that ended the
            wait, so it cannot disagree with whether the wait succeeded.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._active == 0, timeout=timeout)
            return self._active


class ShutdownOutcome(Enum):
    """How draining ended."""

    GRACEFUL = "graceful"
    FORCED = "forced"


@dataclass(slots=True, frozen=True)
class ShutdownResult:
    """Outcome of a completed shutdown sequence."""

    outcome: ShutdownOutcome
    remaining: int  # sessions still active when draining ended
    elapsed: float  # seconds spent draining
    grace_period: float
    reason: str | None = None

    @property
    def forced(self) -> bool:
        return self.outcome is ShutdownOutcome.FORCED

    @property
    def exit_code(self) -> int:
        return 1 if self.forced else 0

    def raise_for_outcome(self) -> None:
        """Raise DrainTimeout if draining was forced."""
        if self.forced:
            raise DrainTimeout(self.remaining, self.grace_period)


StopAccepting = Callable[[], Awaitable[None] | None]


class ShutdownCoordinator:
    """
    Drives the RUNNING -> DRAINING -> STOPPED sequence.

    Termination requests come from OS signals or from request_shutdown();
    the coordinator does not care which. Only one shutdown sequence runs per
    process lifetime.

    Example:
        coordinator = ShutdownCoordinator(state, registry)
        coordinator.install_signal_handlers(asyncio.get_running_loop())
        await coordinator.wait_for_shutdown()
        result = await coordinator.drain(stop_accepting=server.close_listeners)
    """

    def __init__(
        self,
        state: ShutdownState,
        registry: SessionRegistry,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        """
        Initialize the ShutdownCoordinator.

        Args:
            state: Shared shutdown state to transition and broadcast through.
            registry: Registry of active sessions to drain.
            grace_period: Maximum time to wait for sessions (seconds).
        """
        self._state = state
        self._registry = registry
        self._grace_period = grace_period
        self._requested = asyncio.Event()
        self._reason: str | None = None

    @property
    def grace_period(self) -> float:
        """Get the drain grace period."""
        return self._grace_period

    @property
    def reason(self) -> str | None:
        """Get the reason of the first termination request, if any."""
        return self._reason

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """
        Turn SIGINT and SIGTERM into termination requests.

        Args:
            loop: Running asyncio event loop
        """
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)
        log.debug("signal handlers installed", signals=["SIGINT", "SIGTERM"])

    def request_shutdown(self, reason: str = "stop requested") -> None:
        """Ask for the shutdown sequence to start. Later requests are ignored."""
        if self._requested.is_set():
            log.debug("shutdown already requested", reason=reason)
            return
        self._reason = reason
        log.info("shutdown requested", reason=reason)
        self._requested.set()

    async def wait_for_shutdown(self) -> str:
        """Wait for a termination request and return its reason."""
        await self._requested.wait()
        return self._reason or "stop requested"

    async def drain(self, stop_accepting: StopAccepting | None = None) -> ShutdownResult:
        """
        Drain active sessions within the grace period.

        Args:
            stop_accepting: Called once draining begins to stop taking new
                connections. May be a plain or async callable.

        Returns:
            The graceful or forced outcome.

        Raises:
            ShutdownError: If a shutdown already ran or stop_accepting failed.
        """
        self._state.advance(Phase.DRAINING)
        loop = asyncio.get_running_loop()
        started = loop.time()
        log.info(
            "draining sessions",
            active=self._registry.active,
            grace_period=self._grace_period,
        )

        try:
            self._registry.close()
            if stop_accepting is not None:
                try:
                    pending = stop_accepting()
                    if inspect.isawaitable(pending):
                        await pending
                except Exception as exc:
                    raise ShutdownError(f"failed to stop accepting connections: {exc}") from exc

            self._state.cancel()
            remaining = await asyncio.to_thread(
                self._registry.wait_remaining, self._grace_period
            )
        finally:
            self._state.advance(Phase.STOPPED)

        result = ShutdownResult(
            outcome=ShutdownOutcome.FORCED if remaining else ShutdownOutcome.GRACEFUL,
            remaining=remaining,
            elapsed=loop.time() - started,
            grace_period=self._grace_period,
            reason=self._reason,
        )

        if result.forced:
            log.warning(
                "grace period expired, abandoning sessions",
                remaining=result.remaining,
                elapsed=round(result.elapsed, 3),
            )
        else:
            log.info("all sessions drained", elapsed=round(result.elapsed, 3))
        return result
