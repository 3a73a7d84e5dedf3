"""Timeout-based eviction of silent peers."""

from __future__ import annotations

import asyncio
import time
from typing import Callable

from loguru import logger

from lanmeet.discovery.membership import MembershipTable, PeerRecord
from lanmeet.discovery.resilience import PeriodicTask


class Reaper(PeriodicTask):
    """Every *interval* seconds, evicts peers silent for more than *timeout*.

    A peer is therefore reported gone between ``timeout`` and
    ``timeout + interval`` seconds after its last message.
    """

    def __init__(
        self,
        table: MembershipTable,
        timeout: float,
        interval: float,
        stop_event: asyncio.Event,
        on_left: Callable[[PeerRecord], None],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__("Reaper", interval, stop_event)
        self.table = table
        self.timeout = timeout
        self._on_left = on_left
        self._clock = clock

    async def tick(self) -> None:
        self.sweep()

    def sweep(self) -> list[PeerRecord]:
        evicted = self.table.expire(self.timeout, self._clock())
        for record in evicted:
            logger.info(
                f"[Discovery/Reaper] peer timed out: {record.id} "
                f"@ {record.source_address}:{record.source_port}"
            )
            self._on_left(record)
        return evicted
