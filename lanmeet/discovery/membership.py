"""Live membership view of the LAN.

``MembershipTable`` maps ``node_id`` to a ``PeerRecord``.  Every operation
takes an internal lock, so the Listener, the Reaper and any number of readers
(including threads outside the event loop, e.g. a UI) can use it without
external coordination.  Readers only ever get copies.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable


class UpsertResult(str, Enum):
    """Outcome of ``MembershipTable.upsert``."""

    JOINED = "joined"        # id was not in the table
    UPDATED = "updated"      # addressing or display name changed
    REFRESHED = "refreshed"  # only last_seen moved


@dataclass
class PeerRecord:
    """What we know about one remote node."""

    id: str
    source_address: str
    source_port: int
    comm_address: str
    comm_port: int
    last_seen: float  # monotonic seconds
    display_name: str = ""
    joined_at: float = field(default=0.0, compare=False)

    def same_details(self, other: PeerRecord) -> bool:
        """True if everything except the timestamps matches."""
        return (
            self.source_address == other.source_address
            and self.source_port == other.source_port
            and self.comm_address == other.comm_address
            and self.comm_port == other.comm_port
            and self.display_name == other.display_name
        )


class MembershipTable:
    """Thread-safe table of live peers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._peers: dict[str, PeerRecord] = {}

    def upsert(
        self,
        node_id: str,
        source_address: str,
        source_port: int,
        comm_address: str,
        comm_port: int,
        now: float,
        display_name: str = "",
    ) -> UpsertResult:
        """Insert or refresh *node_id*.  Last writer wins on id collision."""
        incoming = PeerRecord(
            id=node_id,
            source_address=source_address,
            source_port=source_port,
            comm_address=comm_address,
            comm_port=comm_port,
            last_seen=now,
            display_name=display_name,
            joined_at=now,
        )
        with self._lock:
            current = self._peers.get(node_id)
            if current is None:
                self._peers[node_id] = incoming
                return UpsertResult.JOINED
            if current.same_details(incoming):
                current.last_seen = now
                return UpsertResult.REFRESHED
            incoming.joined_at = current.joined_at
            self._peers[node_id] = incoming
            return UpsertResult.UPDATED

    def remove(self, node_id: str) -> PeerRecord | None:
        """Remove *node_id* and return its last record, or None if unknown."""
        with self._lock:
            return self._peers.pop(node_id, None)

    def expire(self, timeout: float, now: float) -> list[PeerRecord]:
        """Atomically remove and return every record older than *timeout* seconds."""
        with self._lock:
            stale = [nid for nid, p in self._peers.items() if now - p.last_seen > timeout]
            return [self._peers.pop(nid) for nid in stale]

    def snapshot(self) -> list[PeerRecord]:
        """Point-in-time copies of all records."""
        with self._lock:
            return [replace(p) for p in self._peers.values()]

    def get(self, node_id: str) -> PeerRecord | None:
        with self._lock:
            peer = self._peers.get(node_id)
            return replace(peer) if peer is not None else None

    def clear(self) -> None:
        with self._lock:
            self._peers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._peers


class DiscoveryEvent(str, Enum):
    """Membership changes reported to the observer."""

    NODE_JOINED = "joined"
    NODE_UPDATED = "updated"
    NODE_LEFT = "left"


# Observer callback: receives the event kind and a copy of the record.
Observer = Callable[[DiscoveryEvent, PeerRecord], Any]
