"""Receive loop: decode datagrams and dispatch them by kind.

Dispatch rules
--------------
- own messages (``sender_id`` == local id) are dropped; multicast loopback
  may be on.
- ANNOUNCE  -> upsert the sender, keeping a communication group it proposed
  earlier on this port; JOINED / UPDATED go to the observer.
- REQUEST   -> upsert the sender and unicast a RESPONSE back to the packet's
  source carrying our proposed communication group.
- RESPONSE  -> upsert the sender and hand its proposal to ``on_response``.
- OFFLINE   -> remove the sender at once if known and report NODE_LEFT.

Undecodable datagrams are logged at debug level, unknown kinds at warning
level.  Nothing a peer sends can stop the loop; only closing the channel does.
"""

from __future__ import annotations

import time
from typing import Callable

from loguru import logger

from lanmeet.config.schema import NodeIdentity
from lanmeet.discovery.channel import MulticastChannel
from lanmeet.discovery.errors import ChannelClosedError, ChannelError
from lanmeet.discovery.membership import (
    DiscoveryEvent,
    MembershipTable,
    PeerRecord,
    UpsertResult,
)
from lanmeet.discovery.protocol import (
    DiscoveryMessage,
    MessageKind,
    ParseError,
    decode,
    encode,
)

EventSink = Callable[[DiscoveryEvent, PeerRecord], None]
ResponseHandler = Callable[[DiscoveryMessage], None]


class Listener:
    """Owns the receive side of one channel.

    Parameters
    ----------
    channel:
        Channel to read from; unicast replies are sent through it too.
    identity:
        Local node identity, for loopback suppression and replies.
    table:
        Membership table to update.
    proposal:
        Returns the ``(address, port)`` we offer in RESPONSE messages.
    emit:
        Receives membership events.
    on_response:
        Receives RESPONSE messages; ``None`` ignores their proposals.
    on_error:
        Receives transient channel errors (failed replies).
    """

    def __init__(
        self,
        channel: MulticastChannel,
        identity: NodeIdentity,
        table: MembershipTable,
        *,
        proposal: Callable[[], tuple[str, int]],
        emit: EventSink,
        on_response: ResponseHandler | None = None,
        on_error: Callable[[ChannelError], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "Listener",
    ) -> None:
        self.channel = channel
        self.identity = identity
        self.table = table
        self.name = name
        self._proposal = proposal
        self._emit = emit
        self._on_response = on_response
        self._on_error = on_error
        self._clock = clock
        self._handlers = {
            MessageKind.ANNOUNCE: self._handle_announce,
            MessageKind.REQUEST: self._handle_request,
            MessageKind.RESPONSE: self._handle_response,
            MessageKind.OFFLINE: self._handle_offline,
        }

    async def run(self) -> None:
        logger.debug(f"[Discovery/{self.name}] listening on {self.channel.group}:{self.channel.port}")
        while True:
            try:
                data, ip, port = await self.channel.receive()
            except ChannelClosedError:
                break
            try:
                self.handle_datagram(data, ip, port)
            except Exception as exc:
                logger.warning(f"[Discovery/{self.name}] error handling datagram from {ip}:{port}: {exc}")
        logger.debug(f"[Discovery/{self.name}] channel closed, stopping")

    def handle_datagram(self, data: bytes, ip: str, port: int) -> None:
        message = decode(data)
        if isinstance(message, ParseError):
            if message.unknown_kind:
                logger.warning(f"[Discovery/{self.name}] dropping message from {ip}:{port}: {message.reason}")
            else:
                logger.debug(f"[Discovery/{self.name}] ignoring invalid packet from {ip}:{port}: {message.reason}")
            return
        if message.sender_id == self.identity.id:
            return
        self._handlers[message.kind](message, ip, port)

    # -- per-kind handlers ---------------------------------------------------

    def _handle_announce(self, message: DiscoveryMessage, ip: str, port: int) -> None:
        # The datagram's destination group is not visible here.  A proposal
        # already learnt for this port is the better guess than our own group.
        known = self.table.get(message.sender_id)
        if known is not None and known.comm_port == self.channel.port and known.comm_address:
            comm_address = known.comm_address
        else:
            comm_address = self.channel.group
        self._record(message, ip, port, comm_address, self.channel.port)

    def _handle_request(self, message: DiscoveryMessage, ip: str, port: int) -> None:
        logger.debug(f"[Discovery/{self.name}] discovery request from {message.sender_id} at {ip}:{port}")
        self._record(message, ip, port, message.proposed_comm_address, message.proposed_comm_port)

        address, comm_port = self._proposal()
        reply = DiscoveryMessage.response(
            self.identity.id, address, comm_port, self.identity.display_name,
        )
        try:
            self.channel.send(encode(reply), (ip, port))
        except ChannelClosedError:
            return
        except ChannelError as exc:
            logger.warning(f"[Discovery/{self.name}] response to {ip}:{port} failed: {exc}")
            if self._on_error is not None:
                self._on_error(exc)

    def _handle_response(self, message: DiscoveryMessage, ip: str, port: int) -> None:
        logger.debug(
            f"[Discovery/{self.name}] discovery response from {message.sender_id}: "
            f"{message.proposed_comm_address}:{message.proposed_comm_port}"
        )
        self._record(message, ip, port, message.proposed_comm_address, message.proposed_comm_port)
        if self._on_response is not None:
            self._on_response(message)

    def _handle_offline(self, message: DiscoveryMessage, ip: str, port: int) -> None:
        record = self.table.remove(message.sender_id)
        if record is None:
            return
        logger.info(f"[Discovery/{self.name}] peer went offline: {record.id} ({message.reason or 'no reason'})")
        self._emit(DiscoveryEvent.NODE_LEFT, record)

    def _record(
        self,
        message: DiscoveryMessage,
        ip: str,
        port: int,
        comm_address: str,
        comm_port: int,
    ) -> None:
        result = self.table.upsert(
            message.sender_id, ip, port, comm_address, comm_port,
            self._clock(), display_name=message.display_name,
        )
        if result == UpsertResult.REFRESHED:
            return
        record = self.table.get(message.sender_id)
        if record is None:
            return
        if result == UpsertResult.JOINED:
            logger.info(f"[Discovery/{self.name}] new peer: {record.id} @ {ip}:{port} name={record.display_name!r}")
            self._emit(DiscoveryEvent.NODE_JOINED, record)
        else:
            logger.debug(f"[Discovery/{self.name}] peer updated: {record.id} @ {ip}:{port}")
            self._emit(DiscoveryEvent.NODE_UPDATED, record)
