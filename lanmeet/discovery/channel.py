"""UDP multicast channel.

A ``MulticastChannel`` owns one UDP socket bound to the wildcard address on a
multicast port, joined to one or more groups on that port.  It is wrapped in
an asyncio datagram endpoint: incoming datagrams land in a bounded queue that
``receive()`` drains, and ``send()`` hands bytes straight to the transport, so
one task can block in ``receive()`` while others send.

Closing the channel is the only way to cancel a pending ``receive()``: it
raises ``ChannelClosedError``, which the Listener reads as "shutting down".
"""

from __future__ import annotations

import asyncio
import socket
import struct
from typing import Callable

from loguru import logger

from lanmeet.discovery.errors import ChannelClosedError, ChannelError

# (data, sender_ip, sender_port)
Datagram = tuple[bytes, str, int]
ErrorHandler = Callable[[ChannelError], None]


def _mreq(group: str, interface: str) -> bytes:
    return struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton(interface))


def _set_optional(sock: socket.socket, option: int, value: int, label: str) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_IP, option, value)
    except OSError as exc:
        logger.warning(f"[Discovery/Channel] could not set {label}={value}: {exc}")


def create_multicast_socket(
    group: str,
    port: int,
    *,
    ttl: int = 1,
    loopback: bool = True,
    interface: str = "0.0.0.0",
) -> socket.socket:
    """Create a non-blocking UDP socket bound to *port* and joined to *group*.

    Raises ``ChannelError`` naming the failed step.  TTL and loopback are
    best-effort: failing to set them is only logged.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as exc:
        raise ChannelError("socket", str(exc)) from exc

    try:
        # Several local processes may listen on the same discovery port.
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as exc:
            raise ChannelError("reuse", str(exc)) from exc
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError as exc:
                logger.debug(f"[Discovery/Channel] SO_REUSEPORT unavailable: {exc}")

        try:
            sock.bind(("", port))
        except OSError as exc:
            raise ChannelError("bind", f"port {port}: {exc}") from exc

        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, _mreq(group, interface))
        except OSError as exc:
            raise ChannelError("join", f"group {group}: {exc}") from exc

        _set_optional(sock, socket.IP_MULTICAST_TTL, ttl, "IP_MULTICAST_TTL")
        _set_optional(sock, socket.IP_MULTICAST_LOOP, int(loopback), "IP_MULTICAST_LOOP")
        sock.setblocking(False)
    except ChannelError:
        sock.close()
        raise
    return sock


class _ChannelProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol feeding a ``MulticastChannel``."""

    def __init__(self, channel: MulticastChannel):
        self.channel = channel

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.channel._deliver(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.channel._report(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self.channel._mark_closed()


class MulticastChannel:
    """One multicast group/port pair.

    Use ``await MulticastChannel.open(...)`` rather than the constructor.

    Parameters
    ----------
    group:
        Multicast group the channel was opened on; default send target.
    port:
        UDP port bound on the wildcard address.
    interface:
        Local interface address used for group membership.
    queue_size:
        Maximum buffered datagrams; further ones are dropped.
    on_error:
        Optional callback for asynchronous send errors.
    """

    def __init__(
        self,
        group: str,
        port: int,
        *,
        interface: str = "0.0.0.0",
        queue_size: int = 1024,
        on_error: ErrorHandler | None = None,
    ):
        self.group = group
        self.port = port
        self.interface = interface
        self._on_error = on_error
        self._queue: asyncio.Queue[Datagram | None] = asyncio.Queue(maxsize=queue_size)
        self._sock: socket.socket | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._groups: list[str] = [group]
        self._closed = False

    @classmethod
    async def open(
        cls,
        group: str,
        port: int,
        *,
        ttl: int = 1,
        loopback: bool = True,
        interface: str = "0.0.0.0",
        queue_size: int = 1024,
        on_error: ErrorHandler | None = None,
    ) -> MulticastChannel:
        """Create, bind and join.  Raises ``ChannelError`` on failure."""
        sock = create_multicast_socket(group, port, ttl=ttl, loopback=loopback, interface=interface)
        channel = cls(group, port, interface=interface, queue_size=queue_size, on_error=on_error)
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ChannelProtocol(channel),
                sock=sock,
            )
        except OSError as exc:
            sock.close()
            raise ChannelError("socket", str(exc)) from exc
        channel._sock = sock
        channel._transport = transport
        logger.info(f"[Discovery/Channel] opened {group}:{port} (ttl={ttl})")
        return channel

    # -- properties ----------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def groups(self) -> list[str]:
        """Groups currently joined on this channel's port."""
        return list(self._groups)

    # -- membership ----------------------------------------------------------

    def join(self, group: str) -> None:
        """Join an additional *group* on this channel's port."""
        if group in self._groups:
            return
        self._setsockopt_membership(socket.IP_ADD_MEMBERSHIP, group, "join")
        self._groups.append(group)
        logger.info(f"[Discovery/Channel] joined {group}:{self.port}")

    def leave(self, group: str) -> None:
        """Leave *group*; the channel keeps receiving on any other group."""
        if group not in self._groups:
            return
        self._setsockopt_membership(socket.IP_DROP_MEMBERSHIP, group, "leave")
        self._groups.remove(group)
        logger.info(f"[Discovery/Channel] left {group}:{self.port}")

    def _setsockopt_membership(self, option: int, group: str, step: str) -> None:
        if self._closed or self._sock is None:
            raise ChannelClosedError()
        try:
            self._sock.setsockopt(socket.IPPROTO_IP, option, _mreq(group, self.interface))
        except OSError as exc:
            raise ChannelError(step, f"group {group}: {exc}") from exc

    # -- I/O -----------------------------------------------------------------

    def send(self, data: bytes, address: tuple[str, int] | None = None) -> int:
        """Send *data* to *address* (default: this channel's group/port)."""
        if self._closed or self._transport is None:
            raise ChannelClosedError()
        target = address or (self.group, self.port)
        try:
            self._transport.sendto(data, target)
        except OSError as exc:
            raise ChannelError("send", f"{target[0]}:{target[1]}: {exc}") from exc
        return len(data)

    async def receive(self) -> Datagram:
        """Wait for the next datagram.  Raises ``ChannelClosedError`` on close."""
        if self._closed:
            raise ChannelClosedError()
        item = await self._queue.get()
        if item is None:
            # Leave the sentinel for any other waiter.
            self._queue.put_nowait(None)
            raise ChannelClosedError()
        return item

    def close(self) -> None:
        """Leave every joined group, release the socket, wake receivers."""
        if self._closed:
            return
        if self._sock is not None:
            for group in self._groups:
                try:
                    self._sock.setsockopt(
                        socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, _mreq(group, self.interface),
                    )
                except OSError as exc:
                    logger.debug(f"[Discovery/Channel] leave {group} on close failed: {exc}")
        self._groups.clear()
        if self._transport is not None:
            self._transport.close()
        self._mark_closed()
        logger.info(f"[Discovery/Channel] closed {self.group}:{self.port}")

    # -- protocol callbacks --------------------------------------------------

    def _deliver(self, data: bytes, addr: tuple[str, int]) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait((data, addr[0], addr[1]))
        except asyncio.QueueFull:
            logger.debug(f"[Discovery/Channel] queue full, dropping datagram from {addr[0]}")

    def _report(self, exc: Exception) -> None:
        logger.warning(f"[Discovery/Channel] UDP error on {self.group}:{self.port}: {exc}")
        if self._on_error is not None:
            self._on_error(ChannelError("send", str(exc)))

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
