"""Discovery engine: composition root of the LAN discovery subsystem.

How it works
------------
1. ``start()`` opens the bootstrap channel (the well-known rendezvous group)
   and, when negotiation is enabled, a second channel on the locally
   configured communication group.
2. A REQUEST carrying our proposed communication group is multicast on the
   bootstrap group.  Peers answer with a unicast RESPONSE carrying theirs.
   The last RESPONSE received becomes our heartbeat target.  If nobody answers
   within ``negotiation_timeout`` we heartbeat on our own proposal.
3. Announcer, Reaper and one Listener per channel then run as independent
   tasks until ``stop()``.

The "last RESPONSE wins" rule assumes every node is configured with the same
communication group, so all proposals agree.  With mixed configurations nodes
may end up heartbeating on different groups; when the adopted group shares
the communication port we join it as well, otherwise a warning is logged.

All heartbeats and replies go out through the bootstrap socket, so a peer's
source address/port stays stable no matter which group a packet targets.

Plain observers are called inline.  Coroutine observers are queued and
awaited one at a time by a single dispatcher task, so events for a peer are
delivered in the order they happened; ``stop()`` delivers what is already
queued before it returns.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine

from loguru import logger

from lanmeet.config.schema import DiscoveryConfig, NodeIdentity
from lanmeet.discovery.announcer import Announcer
from lanmeet.discovery.channel import MulticastChannel
from lanmeet.discovery.errors import (
    ChannelClosedError,
    ChannelError,
    DiscoveryError,
    DiscoveryStartError,
)
from lanmeet.discovery.listener import Listener
from lanmeet.discovery.membership import (
    DiscoveryEvent,
    MembershipTable,
    Observer,
    PeerRecord,
)
from lanmeet.discovery.protocol import DiscoveryMessage, encode
from lanmeet.discovery.reaper import Reaper
from lanmeet.discovery.resilience import supervised_task

ChannelFactory = Callable[..., Awaitable[MulticastChannel]]
ErrorHandler = Callable[[DiscoveryError], Any]


class EngineState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class DiscoveryEngine:
    """Serverless LAN membership for one local node.

    Parameters
    ----------
    identity:
        This node's id and display name.
    config:
        Addresses, ports and timings (defaults to ``DiscoveryConfig()``).
    observer:
        Optional ``callback(event, record)`` for membership changes.
    error_handler:
        Optional callback receiving transient ``DiscoveryError`` instances.
    channel_factory:
        Coroutine opening a channel; ``MulticastChannel.open`` by default.
    clock:
        Monotonic clock used for ``last_seen`` bookkeeping.
    """

    def __init__(
        self,
        identity: NodeIdentity,
        config: DiscoveryConfig | None = None,
        *,
        observer: Observer | None = None,
        error_handler: ErrorHandler | None = None,
        channel_factory: ChannelFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identity = identity
        self.config = config or DiscoveryConfig()
        self.table = MembershipTable()
        self._observer = observer
        self._error_handler = error_handler
        self._channel_factory = channel_factory or MulticastChannel.open
        self._clock = clock

        self._state = EngineState.STOPPED
        self._bootstrap: MulticastChannel | None = None
        self._comm: MulticastChannel | None = None
        self._stop_event: asyncio.Event | None = None
        self._ready: asyncio.Event | None = None
        self._tasks: set[asyncio.Task] = set()
        self._announcer: Announcer | None = None
        self._reaper: Reaper | None = None
        # Pending coroutine observer calls, awaited one at a time in order
        self._deliveries: asyncio.Queue[Coroutine[Any, Any, Any] | None] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._comm_target = self._default_target()
        self._negotiated = False

    # -- observers -----------------------------------------------------------

    def set_observer(self, observer: Observer | None) -> None:
        """Register the single membership observer (``None`` to remove it)."""
        self._observer = observer

    def set_error_handler(self, handler: ErrorHandler | None) -> None:
        """Register the optional transient-error handler."""
        self._error_handler = handler

    # -- queries -------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    @property
    def comm_target(self) -> tuple[str, int]:
        """Group/port our heartbeats are currently sent to."""
        return self._comm_target

    @property
    def negotiated(self) -> bool:
        """True once a peer's RESPONSE has been adopted."""
        return self._negotiated

    def members(self) -> list[PeerRecord]:
        """Snapshot of the live membership (empty when stopped)."""
        return self.table.snapshot()

    def get_member(self, node_id: str) -> PeerRecord | None:
        return self.table.get(node_id)

    # -- timings -------------------------------------------------------------

    def set_heartbeat_interval(self, interval_ms: int) -> None:
        """Change the heartbeat interval, also while running.

        A running heartbeat restarts its wait with the new interval.  Raises
        ``ValueError`` (and keeps the old value) unless the node timeout stays
        greater than the interval.
        """
        self._retime(heartbeat_interval_ms=interval_ms)

    def set_node_timeout(self, timeout_ms: int) -> None:
        """Change how long a silent peer is kept; applies from the next sweep."""
        self._retime(node_timeout_ms=timeout_ms)

    def _retime(self, **changes: int) -> None:
        values = self.config.model_dump()
        values.update(changes)
        cfg = DiscoveryConfig(**values)
        self.config = cfg
        logger.info(
            f"[Discovery/Engine] timings: heartbeat={cfg.heartbeat_interval_ms}ms "
            f"timeout={cfg.node_timeout_ms}ms"
        )
        if self._announcer is not None and self._announcer.interval != cfg.heartbeat_interval:
            self._announcer.reschedule(cfg.heartbeat_interval)
        if self._reaper is not None:
            self._reaper.timeout = cfg.node_timeout
            if self._reaper.interval != cfg.sweep_interval:
                self._reaper.reschedule(cfg.sweep_interval)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Open channels and launch the discovery tasks.

        Raises ``DiscoveryStartError`` if a channel cannot be opened; the
        engine then stays stopped.
        """
        if self._state == EngineState.RUNNING:
            return
        if self._state != EngineState.STOPPED:
            raise DiscoveryStartError(f"cannot start while {self._state.value}")

        cfg = self.config
        self._state = EngineState.STARTING
        try:
            self._bootstrap = await self._open_channel(*cfg.bootstrap_group)
            if cfg.uses_negotiation:
                self._comm = await self._open_channel(*cfg.communication_group)
        except ChannelError as exc:
            self._close_channels()
            self._state = EngineState.STOPPED
            logger.error(f"[Discovery/Engine] start failed at {exc.step}: {exc}")
            raise DiscoveryStartError(f"could not open multicast channel ({exc.step}): {exc}") from exc
        except BaseException:
            self._close_channels()
            self._state = EngineState.STOPPED
            logger.error("[Discovery/Engine] start aborted, channels closed")
            raise

        self._stop_event = asyncio.Event()
        self._ready = asyncio.Event()
        self._comm_target = self._default_target()
        self._negotiated = False
        self._state = EngineState.RUNNING

        self._deliveries = asyncio.Queue()
        self._dispatcher = supervised_task(
            self._deliver_events(self._deliveries), name="discovery-observer",
        )
        self._announcer = Announcer(
            self.identity,
            self._heartbeat_target,
            cfg.heartbeat_interval,
            self._stop_event,
            on_error=self._report_error,
        )
        self._reaper = Reaper(
            self.table,
            cfg.node_timeout,
            cfg.sweep_interval,
            self._stop_event,
            on_left=lambda record: self._emit(DiscoveryEvent.NODE_LEFT, record),
            clock=self._clock,
        )
        loops = [
            (self._announcer.run(), "discovery-announcer"),
            (self._reaper.run(), "discovery-reaper"),
            (self._make_listener(self._bootstrap, "Listener/bootstrap").run(), "discovery-listener-bootstrap"),
        ]
        if self._comm is not None:
            loops.append((self._make_listener(self._comm, "Listener/comm").run(), "discovery-listener-comm"))
            loops.append((self._negotiate(), "discovery-negotiation"))
        else:
            self._ready.set()
        for coro, name in loops:
            supervised_task(coro, name=name, registry=self._tasks)

        logger.info(
            f"[Discovery/Engine] started: node={self.identity.id} "
            f"bootstrap={cfg.bootstrap_multicast_address}:{cfg.bootstrap_port} "
            f"comm={self._comm_target[0]}:{self._comm_target[1]}"
        )

    async def stop(self) -> None:
        """Stop all tasks, say goodbye, release sockets and forget peers."""
        if self._state in (EngineState.STOPPED, EngineState.STOPPING):
            return
        self._state = EngineState.STOPPING
        if self._stop_event is not None:
            self._stop_event.set()
        if self.config.send_offline_on_stop:
            self._send_offline()
        self._close_channels()

        tasks = list(self._tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.config.stop_timeout)
            for task in pending:
                logger.warning(f"[Discovery/Engine] task {task.get_name()} did not stop in time, cancelling")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        await self._drain_observer()

        self.table.clear()
        self._announcer = None
        self._reaper = None
        self._state = EngineState.STOPPED
        logger.info("[Discovery/Engine] stopped")

    async def __aenter__(self) -> DiscoveryEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -- negotiation ---------------------------------------------------------

    async def _negotiate(self) -> None:
        assert self._bootstrap is not None and self._ready is not None and self._stop_event is not None
        address, port = self.config.communication_group
        request = DiscoveryMessage.request(self.identity.id, address, port, self.identity.display_name)
        try:
            self._bootstrap.send(encode(request))
        except ChannelClosedError:
            return
        except ChannelError as exc:
            logger.warning(f"[Discovery/Engine] discovery request failed: {exc}")
            self._report_error(exc)

        waiters = [
            asyncio.ensure_future(self._ready.wait()),
            asyncio.ensure_future(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.config.negotiation_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        if not self._ready.is_set() and not self._stop_event.is_set():
            logger.info(
                f"[Discovery/Engine] no discovery response, heartbeating on "
                f"{self._comm_target[0]}:{self._comm_target[1]}"
            )
            self._ready.set()

    def _adopt_response(self, message: DiscoveryMessage) -> None:
        target = (message.proposed_comm_address, message.proposed_comm_port)
        if target != self._comm_target:
            logger.info(
                f"[Discovery/Engine] heartbeat target {self._comm_target[0]}:{self._comm_target[1]} "
                f"-> {target[0]}:{target[1]} (proposed by {message.sender_id})"
            )
            self._comm_target = target
            self._follow_group(target)
        self._negotiated = True
        if self._ready is not None:
            self._ready.set()

    def _follow_group(self, target: tuple[str, int]) -> None:
        """Make sure we also receive heartbeats sent to *target*."""
        if self._comm is None or self._comm.closed:
            return
        address, port = target
        if port != self._comm.port:
            logger.warning(
                f"[Discovery/Engine] adopted port {port} differs from local communication "
                f"port {self._comm.port}; heartbeats sent there will not be received"
            )
            return
        try:
            self._comm.join(address)
        except ChannelError as exc:
            logger.warning(f"[Discovery/Engine] could not join {address}: {exc}")
            self._report_error(exc)

    # -- internals -----------------------------------------------------------

    def _default_target(self) -> tuple[str, int]:
        cfg = self.config
        return cfg.communication_group if cfg.uses_negotiation else cfg.bootstrap_group

    async def _open_channel(self, address: str, port: int) -> MulticastChannel:
        cfg = self.config
        return await self._channel_factory(
            address,
            port,
            ttl=cfg.multicast_ttl,
            loopback=cfg.multicast_loopback,
            interface=cfg.interface_address,
            queue_size=cfg.receive_queue_size,
            on_error=self._report_error,
        )

    def _make_listener(self, channel: MulticastChannel, name: str) -> Listener:
        return Listener(
            channel,
            self.identity,
            self.table,
            proposal=lambda: self._comm_target,
            emit=self._emit,
            on_response=self._adopt_response if self.config.uses_negotiation else None,
            on_error=self._report_error,
            clock=self._clock,
            name=name,
        )

    def _heartbeat_target(self) -> tuple[MulticastChannel, tuple[str, int]] | None:
        if self._bootstrap is None or self._ready is None or not self._ready.is_set():
            return None
        return self._bootstrap, self._comm_target

    def _send_offline(self) -> None:
        if self._bootstrap is None or self._bootstrap.closed:
            return
        data = encode(DiscoveryMessage.offline(self.identity.id, "normal_shutdown"))
        for target in dict.fromkeys([self.config.bootstrap_group, self._comm_target]):
            try:
                self._bootstrap.send(data, target)
            except ChannelError as exc:
                logger.debug(f"[Discovery/Engine] offline notice to {target[0]}:{target[1]} failed: {exc}")

    def _close_channels(self) -> None:
        for channel in (self._comm, self._bootstrap):
            if channel is not None:
                channel.close()
        self._comm = None
        self._bootstrap = None

    def _emit(self, event: DiscoveryEvent, record: PeerRecord) -> None:
        if self._observer is None:
            logger.debug(f"[Discovery/Engine] no observer, dropping {event.value} for {record.id}")
            return
        try:
            result = self._observer(event, record)
        except Exception as exc:
            logger.error(f"[Discovery/Engine] observer error: {exc}")
            return
        if not asyncio.iscoroutine(result):
            return
        if self._deliveries is None:
            result.close()
            logger.debug(f"[Discovery/Engine] not running, dropping {event.value} for {record.id}")
            return
        self._deliveries.put_nowait(result)

    async def _deliver_events(self, queue: asyncio.Queue) -> None:
        """Await coroutine observer calls one by one, in emission order."""
        while True:
            pending = await queue.get()
            if pending is None:
                return
            try:
                await pending
            except Exception as exc:
                logger.error(f"[Discovery/Engine] observer error: {exc}")

    async def _drain_observer(self) -> None:
        """Deliver what is already queued, then end the dispatcher."""
        queue, dispatcher = self._deliveries, self._dispatcher
        self._deliveries = None
        self._dispatcher = None
        if queue is None or dispatcher is None:
            return
        queue.put_nowait(None)
        done, _ = await asyncio.wait([dispatcher], timeout=self.config.stop_timeout)
        if not done:
            logger.warning("[Discovery/Engine] observer did not finish in time, cancelling")
            dispatcher.cancel()
            await asyncio.gather(dispatcher, return_exceptions=True)
        while not queue.empty():
            leftover = queue.get_nowait()
            if leftover is not None:
                leftover.close()

    def _report_error(self, error: DiscoveryError) -> None:
        if self._error_handler is None:
            return
        try:
            self._error_handler(error)
        except Exception as exc:
            logger.error(f"[Discovery/Engine] error handler failed: {exc}")
