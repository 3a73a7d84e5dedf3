"""Periodic liveness heartbeat."""

from __future__ import annotations

import asyncio
from typing import Callable

from loguru import logger

from lanmeet.config.schema import NodeIdentity
from lanmeet.discovery.channel import MulticastChannel
from lanmeet.discovery.errors import ChannelClosedError, ChannelError
from lanmeet.discovery.protocol import DiscoveryMessage, encode
from lanmeet.discovery.resilience import PeriodicTask

# Returns the channel to send on and the destination, or None while the
# heartbeat target has not been settled yet.
TargetProvider = Callable[[], tuple[MulticastChannel, tuple[str, int]] | None]


class Announcer(PeriodicTask):
    """Sends an Announce for *identity* every *interval* seconds.

    A failed send is logged and reported; the next tick acts as the retry.
    """

    def __init__(
        self,
        identity: NodeIdentity,
        target: TargetProvider,
        interval: float,
        stop_event: asyncio.Event,
        on_error: Callable[[ChannelError], None] | None = None,
    ) -> None:
        super().__init__("Announcer", interval, stop_event)
        self.identity = identity
        self._target = target
        self._on_error = on_error
        self.sent = 0

    async def tick(self) -> None:
        target = self._target()
        if target is None:
            return
        channel, address = target
        data = encode(DiscoveryMessage.announce(self.identity.id, self.identity.display_name))
        try:
            channel.send(data, address)
        except ChannelClosedError:
            logger.debug("[Discovery/Announcer] channel closed, skipping heartbeat")
            return
        except ChannelError as exc:
            logger.warning(f"[Discovery/Announcer] heartbeat to {address[0]}:{address[1]} failed: {exc}")
            if self._on_error is not None:
                self._on_error(exc)
            return
        self.sent += 1
