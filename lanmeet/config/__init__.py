"""Configuration models."""

from lanmeet.config.schema import DiscoveryConfig, NodeIdentity

__all__ = ["DiscoveryConfig", "NodeIdentity"]
