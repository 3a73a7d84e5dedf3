"""LAN peer discovery over UDP multicast.

Nodes on the same network segment find each other without a coordinator:
a small request/response rendezvous on a well-known bootstrap group agrees
on a communication group, periodic heartbeats keep peers alive, and silent
peers are evicted after a timeout.
"""

from lanmeet.discovery.channel import MulticastChannel
from lanmeet.discovery.engine import DiscoveryEngine, EngineState
from lanmeet.discovery.errors import (
    ChannelClosedError,
    ChannelError,
    DiscoveryError,
    DiscoveryStartError,
)
from lanmeet.discovery.membership import DiscoveryEvent, MembershipTable, PeerRecord
from lanmeet.discovery.protocol import DiscoveryMessage, MessageKind, ParseError, decode, encode

__all__ = [
    "ChannelClosedError",
    "ChannelError",
    "DiscoveryEngine",
    "DiscoveryError",
    "DiscoveryEvent",
    "DiscoveryMessage",
    "DiscoveryStartError",
    "EngineState",
    "MembershipTable",
    "MessageKind",
    "MulticastChannel",
    "ParseError",
    "PeerRecord",
    "decode",
    "encode",
]
