"""Tests for discovery configuration."""

import pytest
from pydantic import ValidationError

from lanmeet.config.schema import DiscoveryConfig, NodeIdentity


class TestDiscoveryConfig:
    def test_defaults(self):
        cfg = DiscoveryConfig()
        assert cfg.bootstrap_group == ("239.255.43.21", 45454)
        assert cfg.communication_group == ("239.255.43.22", 45455)
        assert cfg.heartbeat_interval == 1.0
        assert cfg.node_timeout == 5.0
        assert cfg.sweep_interval == 1.0
        assert cfg.multicast_ttl == 1
        assert cfg.uses_negotiation

    def test_camel_case_keys(self):
        cfg = DiscoveryConfig.model_validate({
            "bootstrapMulticastAddress": "239.1.1.1",
            "bootstrapPort": 5000,
            "heartbeatIntervalMs": 100,
            "nodeTimeoutMs": 500,
            "sweepIntervalMs": 50,
        })
        assert cfg.bootstrap_group == ("239.1.1.1", 5000)
        assert cfg.sweep_interval == 0.05

    def test_timeout_must_exceed_heartbeat(self):
        with pytest.raises(ValidationError):
            DiscoveryConfig(heartbeat_interval_ms=1000, node_timeout_ms=1000)

    @pytest.mark.parametrize("address", ["192.168.1.1", "nonsense", "::1"])
    def test_rejects_non_multicast(self, address):
        with pytest.raises(ValidationError):
            DiscoveryConfig(bootstrap_multicast_address=address)

    @pytest.mark.parametrize("ttl", [0, 256])
    def test_ttl_range(self, ttl):
        with pytest.raises(ValidationError):
            DiscoveryConfig(multicast_ttl=ttl)

    def test_same_groups_disable_negotiation(self):
        cfg = DiscoveryConfig(
            communication_multicast_address="239.255.43.21",
            communication_port=45454,
        )
        assert not cfg.uses_negotiation

    def test_negotiation_flag(self):
        assert not DiscoveryConfig(negotiation_enabled=False).uses_negotiation


class TestNodeIdentity:
    def test_frozen(self):
        identity = NodeIdentity(id="a", display_name="Alice")
        with pytest.raises(ValidationError):
            identity.id = "b"

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            NodeIdentity(id="")

    def test_camel_case(self):
        identity = NodeIdentity.model_validate({"id": "a", "displayName": "Alice"})
        assert identity.display_name == "Alice"
