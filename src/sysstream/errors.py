"""Exception types for sysstream."""


class SysstreamError(Exception):
    """Base class for sysstream errors."""


class HandshakeError(SysstreamError):
    """The WebSocket upgrade could not be completed."""


class ProviderError(SysstreamError):
    """The metrics provider failed to produce a snapshot."""


class TransportError(SysstreamError):
    """Reading from or writing to the client connection failed."""


class RegistryClosed(SysstreamError):
    """A session tried to register after draining began."""


class StartupError(SysstreamError):
    """The server could not bind its listening socket."""


class ShutdownError(SysstreamError):
    """The shutdown sequence itself failed."""


class DrainTimeout(SysstreamError):
    """The grace period elapsed with sessions still active."""

    def __init__(self, remaining: int, grace_period: float) -> None:
        super().__init__(
            f"{remaining} session(s) still active after {grace_period:.1f}s grace period"
        )
        self.remaining = remaining
        self.grace_period = grace_period
