"""Exception hierarchy for the discovery subsystem.

Only start-up failures ever reach the caller as raised exceptions.  Everything
that happens once the engine is running is logged and, if an error handler is
registered, forwarded to it as one of these instances.
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for all discovery errors."""


class ChannelError(DiscoveryError):
    """A multicast socket operation failed.

    ``step`` names the operation that failed: ``socket``, ``reuse``, ``bind``,
    ``join``, ``leave`` or ``send``.
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class ChannelClosedError(ChannelError):
    """The channel was closed; pending and future I/O fails with this."""

    def __init__(self, message: str = "channel is closed") -> None:
        super().__init__("closed", message)


class DiscoveryStartError(DiscoveryError):
    """``DiscoveryEngine.start()`` could not bring the engine up."""
