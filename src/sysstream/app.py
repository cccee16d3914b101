"""sysstream - WebSocket server streaming host snapshots."""

import asyncio
import contextlib
import socket
import sys
from collections.abc import Iterator

import structlog
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status

from sysstream.config import Settings, get_settings
from sysstream.errors import HandshakeError, RegistryClosed, ShutdownError, StartupError
from sysstream.lifecycle import SessionRegistry, ShutdownCoordinator, ShutdownResult, ShutdownState
from sysstream.logs import configure_logging
from sysstream.monitor import Provider, collect_snapshot
from sysstream.session import Session

log = structlog.get_logger(__name__)


def create_app(
    *,
    state: ShutdownState,
    registry: SessionRegistry,
    provider: Provider,
    interval: float,
) -> FastAPI:
    """Build the FastAPI application exposing the streaming endpoint."""
    app = FastAPI(title="sysstream", docs_url=None, redoc_url=None, openapi_url=None)

    @app.websocket("/ws")
    async def stream(websocket: WebSocket) -> None:
        if not state.is_running:
            # Closing before accept() rejects the upgrade
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
            return

        try:
            await websocket.accept()
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise HandshakeError(f"upgrade failed: {exc}") from exc

        try:
            session = Session.open(
                websocket,
                provider=provider,
                registry=registry,
                state=state,
                interval=interval,
            )
        except RegistryClosed as exc:
            await websocket.close(code=status.WS_1001_GOING_AWAY, reason=str(exc))
            return

        try:
            await session.run()
        except asyncio.CancelledError:
            # Abandoned by a forced drain; the session already deregistered
            log.debug("session abandoned at shutdown")

    return app


class _CoordinatedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the ShutdownCoordinator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class Server:
    """
    Accepts streaming connections and runs the shutdown sequence.

    serve() runs until a termination request arrives (an OS signal or
    stop()), then drains sessions through the ShutdownCoordinator and
    returns its result.
    """

    def __init__(self, settings: Settings | None = None, provider: Provider = collect_snapshot) -> None:
        """
        Initialize the Server.

        Args:
            settings: Runtime settings. Defaults to the environment settings.
            provider: Callable producing one Snapshot per tick.
        """
        self.settings = settings or get_settings()
        self.state = ShutdownState()
        self.registry = SessionRegistry()
        self.coordinator = ShutdownCoordinator(
            self.state, self.registry, grace_period=self.settings.grace_period
        )
        self.app = create_app(
            state=self.state,
            registry=self.registry,
            provider=provider,
            interval=self.settings.interval,
        )
        self._server: uvicorn.Server | None = None

    @property
    def started(self) -> bool:
        """Check if uvicorn is bound and accepting connections."""
        return self._server is not None and self._server.started

    def _create_server(self) -> uvicorn.Server:
        config = uvicorn.Config(
            app=self.app,
            host=self.settings.host,
            port=self.settings.port,
            loop="asyncio",
            lifespan="off",
            log_level=self.settings.log_level.lower(),
            access_log=False,
            server_header=False,
        )
        return _CoordinatedServer(config)

    def _bind_socket(self) -> socket.socket:
        """
        Bind the listening socket before uvicorn starts.

        uvicorn exits the process on a bind failure; binding here turns that
        into a StartupError the caller can map to its own exit status.

        Raises:
            StartupError: If the address cannot be bound.
        """
        host, port = self.settings.host, self.settings.port
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
        except OSError as exc:
            sock.close()
            raise StartupError(f"cannot bind {host}:{port}: {exc}") from exc
        return sock

    def stop(self, reason: str = "stop requested") -> None:
        """Request shutdown; serve() drains and returns."""
        self.coordinator.request_shutdown(reason)

    def _stop_accepting(self) -> None:
        """Close the listening sockets; open connections are left alone."""
        if self._server is None:
            return
        for listener in getattr(self._server, "servers", []):
            listener.close()
        log.info("stopped accepting connections")

    async def serve(self, *, install_signal_handlers: bool = True) -> ShutdownResult:
        """
        Run the server until shutdown completes.

        Raises:
            StartupError: If the listening socket could not be bound.
            ShutdownError: If the shutdown sequence failed, or uvicorn exited
                before any shutdown was requested.
        """
        sock = self._bind_socket()
        self._server = self._create_server()
        log.info("starting server", host=self.settings.host, port=self.settings.port)

        serve_task = asyncio.create_task(self._server.serve(sockets=[sock]), name="uvicorn")
        if install_signal_handlers:
            self.coordinator.install_signal_handlers(asyncio.get_running_loop())

        requested = asyncio.create_task(self.coordinator.wait_for_shutdown())
        done, _ = await asyncio.wait(
            {serve_task, requested}, return_when=asyncio.FIRST_COMPLETED
        )
        if requested not in done:
            requested.cancel()
            serve_task.result()
            raise ShutdownError("server exited before shutdown was requested")

        result: ShutdownResult | None = None
        try:
            result = await self.coordinator.drain(stop_accepting=self._stop_accepting)
        finally:
            self._server.should_exit = True
            if result is None or result.forced:
                # Do not wait on abandoned connections
                self._server.force_exit = True
            await serve_task

        log.info("stopped server", outcome=result.outcome.value)
        return result


def main() -> None:
    """Entry point for the sysstream server."""
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    server = Server(settings)
    try:
        result = asyncio.run(server.serve())
    except StartupError as exc:
        log.error("startup failed", error=str(exc))
        sys.exit(2)
    except ShutdownError as exc:
        log.error("shutdown failed", error=str(exc))
        sys.exit(2)

    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
