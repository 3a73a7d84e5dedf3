"""Wire-level protocol for discovery datagrams.

Every discovery message is one compact UTF-8 JSON object carried in a single
UDP datagram.  There is no length prefix: the datagram boundary is the frame.

Message format
--------------
{
    "kind": "announce",             # see MessageKind
    "senderId": "node-id",          # sender node ID
    "timestamp": 1700000000000,     # sender wall clock, integer milliseconds
    "displayName": "Alice",         # announce (required), request/response (optional)
    "proposedCommAddress": "...",   # request/response: multicast group for heartbeats
    "proposedCommPort": 45455,      # request/response
    "reason": "normal_shutdown"     # offline (optional)
}

``decode`` never raises.  Anything that is not a well-formed message comes
back as a ``ParseError`` so that a hostile or truncated datagram cannot take
down the receive loop.
"""

from __future__ import annotations

import ipaddress
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    """Recognised discovery message kinds."""

    # Periodic liveness heartbeat
    ANNOUNCE = "announce"
    # Rendezvous query multicast on the bootstrap group
    REQUEST = "request"
    # Unicast reply to a request carrying the responder's proposal
    RESPONSE = "response"
    # Courtesy notice sent on shutdown
    OFFLINE = "offline"


_NEGOTIATION_KINDS = (MessageKind.REQUEST, MessageKind.RESPONSE)


def now_ms() -> int:
    """Wall clock in integer milliseconds, as stamped on outgoing messages."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class DiscoveryMessage:
    """One discovery message."""

    kind: MessageKind
    sender_id: str
    timestamp: int
    display_name: str = ""
    proposed_comm_address: str = ""
    proposed_comm_port: int = 0
    reason: str = ""

    def __post_init__(self) -> None:
        # Anything accepted here must survive encode/decode unchanged.
        if not self.sender_id:
            raise ValueError("sender_id must not be empty")
        if not _is_int(self.timestamp):
            raise ValueError(f"timestamp must be an int, got {self.timestamp!r}")
        if self.kind in _NEGOTIATION_KINDS:
            if not _is_ipv4(self.proposed_comm_address):
                raise ValueError(f"invalid proposed address {self.proposed_comm_address!r}")
            if not _is_int(self.proposed_comm_port) or not 0 < self.proposed_comm_port <= 65535:
                raise ValueError(f"invalid proposed port {self.proposed_comm_port!r}")
        elif self.proposed_comm_address or self.proposed_comm_port:
            raise ValueError(f"{self.kind.value} carries no communication proposal")
        if self.kind == MessageKind.OFFLINE and self.display_name:
            raise ValueError("offline carries no display name")
        if self.kind != MessageKind.OFFLINE and self.reason:
            raise ValueError(f"{self.kind.value} carries no reason")

    # -- constructors --------------------------------------------------------

    @classmethod
    def announce(cls, sender_id: str, display_name: str) -> DiscoveryMessage:
        return cls(MessageKind.ANNOUNCE, sender_id, now_ms(), display_name=display_name)

    @classmethod
    def request(
        cls, sender_id: str, address: str, port: int, display_name: str = "",
    ) -> DiscoveryMessage:
        return cls(
            MessageKind.REQUEST, sender_id, now_ms(),
            display_name=display_name,
            proposed_comm_address=address,
            proposed_comm_port=port,
        )

    @classmethod
    def response(
        cls, sender_id: str, address: str, port: int, display_name: str = "",
    ) -> DiscoveryMessage:
        return cls(
            MessageKind.RESPONSE, sender_id, now_ms(),
            display_name=display_name,
            proposed_comm_address=address,
            proposed_comm_port=port,
        )

    @classmethod
    def offline(cls, sender_id: str, reason: str = "") -> DiscoveryMessage:
        return cls(MessageKind.OFFLINE, sender_id, now_ms(), reason=reason)

    # -- serialisation -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Return the wire dict; only fields meaningful for ``kind`` are included."""
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
        }
        if self.kind == MessageKind.ANNOUNCE:
            d["displayName"] = self.display_name
        elif self.kind in _NEGOTIATION_KINDS:
            d["proposedCommAddress"] = self.proposed_comm_address
            d["proposedCommPort"] = self.proposed_comm_port
            if self.display_name:
                d["displayName"] = self.display_name
        elif self.reason:
            d["reason"] = self.reason
        return d


@dataclass(frozen=True)
class ParseError:
    """Typed decode failure.  ``unknown_kind`` marks a well-formed message of a
    kind this version does not understand."""

    reason: str
    unknown_kind: bool = False

    def __bool__(self) -> bool:
        return False


def encode(message: DiscoveryMessage) -> bytes:
    """Serialise *message* to compact JSON bytes."""
    return json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(data: bytes) -> DiscoveryMessage | ParseError:
    """Parse one datagram.  Returns a ``ParseError`` instead of raising."""
    if not data:
        return ParseError("empty payload")
    # ValueError covers JSONDecodeError and oversized integer literals.
    try:
        obj = json.loads(data.decode("utf-8"))
    except (ValueError, RecursionError) as exc:
        return ParseError(f"not JSON: {exc}")
    if not isinstance(obj, dict):
        return ParseError("top-level value is not an object")

    raw_kind = obj.get("kind")
    try:
        kind = MessageKind(raw_kind)
    except ValueError:
        return ParseError(f"unknown kind {raw_kind!r}", unknown_kind=raw_kind is not None)

    sender_id = obj.get("senderId")
    if not isinstance(sender_id, str) or not sender_id:
        return ParseError("missing senderId")
    timestamp = obj.get("timestamp")
    if not _is_int(timestamp):
        return ParseError("missing or non-numeric timestamp")

    display_name = obj.get("displayName", "")
    if not isinstance(display_name, str):
        return ParseError("displayName is not a string")
    if kind == MessageKind.ANNOUNCE and "displayName" not in obj:
        return ParseError("announce without displayName")

    address = ""
    port = 0
    if kind in _NEGOTIATION_KINDS:
        address = obj.get("proposedCommAddress")
        if not isinstance(address, str) or not _is_ipv4(address):
            return ParseError("missing or invalid proposedCommAddress")
        port = obj.get("proposedCommPort")
        if not _is_int(port) or not 0 < port <= 65535:
            return ParseError("missing or invalid proposedCommPort")

    reason = obj.get("reason", "") if kind == MessageKind.OFFLINE else ""
    if not isinstance(reason, str):
        return ParseError("reason is not a string")

    try:
        return DiscoveryMessage(
            kind=kind,
            sender_id=sender_id,
            timestamp=timestamp,
            display_name=display_name if kind != MessageKind.OFFLINE else "",
            proposed_comm_address=address,
            proposed_comm_port=port,
            reason=reason,
        )
    except ValueError as exc:
        return ParseError(str(exc))


def _is_int(value: Any) -> bool:
    # bool is a subclass of int but never a valid port or timestamp
    return isinstance(value, int) and not isinstance(value, bool)


def _is_ipv4(value: Any) -> bool:
    # IPv4Address also accepts ints; the wire only carries dotted strings
    if not isinstance(value, str):
        return False
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True
