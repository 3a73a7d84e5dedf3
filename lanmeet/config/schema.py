"""Configuration schema using Pydantic."""

import ipaddress

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeIdentity(Base):
    """Who this process is on the network. Immutable for the process lifetime."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    display_name: str = ""


class DiscoveryConfig(BaseSettings):
    """LAN discovery configuration.

    Values can be passed directly, loaded from a camelCase dict, or read from
    ``LANMEET_*`` environment variables.
    """

    # Rendezvous group every node listens on at start-up
    bootstrap_multicast_address: str = "239.255.43.21"
    bootstrap_port: int = Field(default=45454, ge=1, le=65535)
    # Group proposed to peers for steady-state heartbeats
    communication_multicast_address: str = "239.255.43.22"
    communication_port: int = Field(default=45455, ge=1, le=65535)

    heartbeat_interval_ms: int = Field(default=1000, gt=0)
    node_timeout_ms: int = Field(default=5000, gt=0)
    sweep_interval_ms: int | None = Field(default=None, gt=0)  # None = heartbeat interval

    negotiation_enabled: bool = True  # If false, heartbeats stay on the bootstrap group
    negotiation_timeout_ms: int = Field(default=1000, gt=0)

    multicast_ttl: int = Field(default=1, ge=1, le=255)  # 1 = same subnet only
    multicast_loopback: bool = True  # Own packets are dropped by sender id anyway
    interface_address: str = "0.0.0.0"

    send_offline_on_stop: bool = True
    receive_queue_size: int = Field(default=1024, gt=0)
    stop_timeout_ms: int = Field(default=2000, gt=0)

    model_config = SettingsConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        env_prefix="LANMEET_",
    )

    @field_validator("bootstrap_multicast_address", "communication_multicast_address")
    @classmethod
    def _check_multicast(cls, value: str) -> str:
        try:
            addr = ipaddress.IPv4Address(value)
        except ipaddress.AddressValueError as exc:
            raise ValueError(f"not an IPv4 address: {value!r}") from exc
        if not addr.is_multicast:
            raise ValueError(f"not a multicast address: {value!r}")
        return value

    @field_validator("interface_address")
    @classmethod
    def _check_interface(cls, value: str) -> str:
        try:
            ipaddress.IPv4Address(value)
        except ipaddress.AddressValueError as exc:
            raise ValueError(f"not an IPv4 address: {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _check_timeout(self) -> "DiscoveryConfig":
        # A single lost heartbeat must not evict a peer.
        if self.node_timeout_ms <= self.heartbeat_interval_ms:
            raise ValueError(
                f"node_timeout_ms ({self.node_timeout_ms}) must be greater than "
                f"heartbeat_interval_ms ({self.heartbeat_interval_ms})"
            )
        return self

    # -- derived values in seconds ------------------------------------------

    @property
    def heartbeat_interval(self) -> float:
        return self.heartbeat_interval_ms / 1000.0

    @property
    def node_timeout(self) -> float:
        return self.node_timeout_ms / 1000.0

    @property
    def sweep_interval(self) -> float:
        ms = self.sweep_interval_ms or self.heartbeat_interval_ms
        return ms / 1000.0

    @property
    def negotiation_timeout(self) -> float:
        return self.negotiation_timeout_ms / 1000.0

    @property
    def stop_timeout(self) -> float:
        return self.stop_timeout_ms / 1000.0

    @property
    def bootstrap_group(self) -> tuple[str, int]:
        return self.bootstrap_multicast_address, self.bootstrap_port

    @property
    def communication_group(self) -> tuple[str, int]:
        return self.communication_multicast_address, self.communication_port

    @property
    def uses_negotiation(self) -> bool:
        """True when heartbeats move to a separate communication group."""
        return self.negotiation_enabled and self.communication_group != self.bootstrap_group
