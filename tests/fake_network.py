"""In-memory multicast fabric used in place of real sockets in tests.

Every ``FakeChannel`` has a host IP and a bound port.  A send to a multicast
group reaches every open channel bound to that port that has joined the
group (including the sender, like multicast loopback); a send to a unicast
address reaches channels on that host and port.  Source address is always
``(host ip, bound port)``, as with a real socket.
"""

from __future__ import annotations

import asyncio
import ipaddress

from lanmeet.discovery.errors import ChannelClosedError, ChannelError


class FakeChannel:
    def __init__(self, fabric: FakeFabric, ip: str, group: str, port: int):
        self.fabric = fabric
        self.ip = ip
        self.group = group
        self.port = port
        self._groups = [group]
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.sent: list[tuple[bytes, tuple[str, int]]] = []

    @property
    def groups(self) -> list[str]:
        return list(self._groups)

    def join(self, group: str) -> None:
        if self.closed:
            raise ChannelClosedError()
        if group not in self._groups:
            self._groups.append(group)

    def leave(self, group: str) -> None:
        if group in self._groups:
            self._groups.remove(group)

    def send(self, data: bytes, address: tuple[str, int] | None = None) -> int:
        if self.closed:
            raise ChannelClosedError()
        target = address or (self.group, self.port)
        if self.fabric.fail_sends:
            raise ChannelError("send", "simulated failure")
        self.sent.append((data, target))
        self.fabric.deliver(data, (self.ip, self.port), target)
        return len(data)

    async def receive(self) -> tuple[bytes, str, int]:
        if self.closed:
            raise ChannelClosedError()
        item = await self._queue.get()
        if item is None:
            self._queue.put_nowait(None)
            raise ChannelClosedError()
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._groups.clear()
        self._queue.put_nowait(None)

    def inject(self, data: bytes, ip: str, port: int) -> None:
        self._queue.put_nowait((data, ip, port))


class FakeFabric:
    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.fail_sends = False
        self.open_errors: dict[tuple[str, int], Exception] = {}

    def factory(self, ip: str):
        """Return a ``channel_factory`` for a node living at *ip*."""

        async def open_channel(group: str, port: int, **_options) -> FakeChannel:
            error = self.open_errors.get((group, port))
            if error is not None:
                raise error
            return self.open(ip, group, port)

        return open_channel

    def open(self, ip: str, group: str, port: int) -> FakeChannel:
        channel = FakeChannel(self, ip, group, port)
        self.channels.append(channel)
        return channel

    def deliver(self, data: bytes, source: tuple[str, int], target: tuple[str, int]) -> None:
        address, port = target
        multicast = ipaddress.IPv4Address(address).is_multicast
        for channel in self.channels:
            if channel.closed or channel.port != port:
                continue
            if (multicast and address in channel.groups) or (not multicast and address == channel.ip):
                channel.inject(data, *source)
