"""Tests for lbnet.adapters package."""

import pytest

from lbnet.adapters import PROFILES, Binding, ServiceAdapter, get_adapter
from lbnet.constants import (
    CONFIG_HASH_KEY,
    NETWORK_TYPE_KEY,
    OWNER_KEY_ANNOTATION,
    POOL_FINALIZER,
    POOL_INDEX_LABEL,
    SELECTOR_REPLICA_KEY,
    WORKLOAD_SET_ANNOTATION,
    NetworkType,
)
from lbnet.exceptions import ConfigurationError
from lbnet.network_config import parse_network_config, parse_zone_maps
from lbnet.store import InMemoryObjectStore
from lbnet.types import OwnerReference
from tests.conftest import SHARED_CONF, conf_json


@pytest.fixture
def adapter(store: InMemoryObjectStore) -> ServiceAdapter:
    return ServiceAdapter(store, PROFILES["alibabacloud"])


class TestGetAdapter:
    """Tests for vendor resolution."""

    def test_known_vendors(self, store: InMemoryObjectStore) -> None:
        for vendor in ("alibabacloud", "volcengine"):
            assert get_adapter(vendor, store).profile.name == vendor

    def test_unknown_vendor(self, store: InMemoryObjectStore) -> None:
        with pytest.raises(ConfigurationError):
            get_adapter("othercloud", store)


class TestBuildNetworkObject:
    """Tests for network object construction."""

    def test_shared_object(self, adapter: ServiceAdapter) -> None:
        """Ports, selector, labels and annotations reflect the binding."""
        conf = parse_network_config(SHARED_CONF)
        binding = Binding("default/gss-0", "lb-1", [500, 501], workload_set="default/gss")

        obj = adapter.build_network_object("default", "gss-0", "gss-0", binding, conf, NetworkType.SHARED_LB)

        assert [(p.port, p.protocol, p.target_port) for p in obj.ports] == [(500, "TCP", 80), (501, "UDP", 7777)]
        assert obj.selector == {SELECTOR_REPLICA_KEY: "gss-0"}
        assert obj.labels[adapter.profile.lb_id_label] == "lb-1"
        assert obj.labels[NETWORK_TYPE_KEY] == "Shared-LB"
        assert obj.annotations[adapter.profile.lb_id_annotation] == "lb-1"
        assert obj.annotations[CONFIG_HASH_KEY] == conf.config_hash()
        assert obj.annotations[OWNER_KEY_ANNOTATION] == "default/gss-0"
        assert obj.annotations[WORKLOAD_SET_ANNOTATION] == "default/gss"
        assert obj.reachable
        assert adapter.load_balancer_id(obj) == "lb-1"

    def test_tcpudp_expands(self, adapter: ServiceAdapter) -> None:
        """A TCPUDP port yields one listener per protocol on the same port."""
        conf = parse_network_config(conf_json(LbIds="lb-1", PortProtocols="7777/TCPUDP"))
        obj = adapter.build_network_object(
            "default", "gss-0", "gss-0", Binding("default/gss-0", "lb-1", [500]), conf, NetworkType.SHARED_LB
        )
        assert [(p.port, p.protocol) for p in obj.ports] == [(500, "TCP"), (500, "UDP")]
        assert obj.port_numbers() == [500]

    def test_disabled_is_unreachable(self, adapter: ServiceAdapter) -> None:
        conf = parse_network_config(SHARED_CONF)
        obj = adapter.build_network_object(
            "default", "gss-0", "gss-0", Binding("default/gss-0", "lb-1", [500, 501]), conf, NetworkType.SHARED_LB, disabled=True
        )
        assert not obj.reachable


class TestObjectLifecycle:
    """Tests for create/delete through the store."""

    def test_create_existing_returns_stored(self, adapter: ServiceAdapter, store: InMemoryObjectStore) -> None:
        """Creating an object that exists returns the stored one."""
        conf = parse_network_config(SHARED_CONF)
        obj = adapter.build_network_object(
            "default", "gss-0", "gss-0", Binding("default/gss-0", "lb-1", [500, 501]), conf, NetworkType.SHARED_LB
        )
        first = adapter.create_network_object(obj)
        second = adapter.create_network_object(obj)
        assert second.resource_version == first.resource_version

    def test_delete_missing(self, adapter: ServiceAdapter) -> None:
        assert adapter.delete_network_object("default", "nope") is False


class TestPoolResources:
    """Tests for elastic IP and load-balancer construction."""

    def test_elastic_ip(self, adapter: ServiceAdapter) -> None:
        """Single-carrier lines are billed by bandwidth."""
        eip = adapter.build_elastic_ip("default", "gss-eip-chinamobile-0-z1", "gss", "ChinaMobile", 0, 1, None)
        assert eip.labels[POOL_INDEX_LABEL] == "0-z1"
        assert eip.spec["internetChargeType"] == "PayByBandwidth"
        assert eip.spec["isp"] == "ChinaMobile"

    def test_load_balancer(self, adapter: ServiceAdapter) -> None:
        """Zones are paired with allocation ids and owned pools carry the finalizer."""
        zone_maps = parse_zone_maps("vpc-1@cn-a:vsw-a,cn-b:vsw-b")
        owner = OwnerReference("GameServerSet", "gss", "uid-1")

        lb = adapter.build_load_balancer("default", "gss-bgp-0", "gss", "BGP", 0, zone_maps, ["eip-a", "eip-b"], owner)

        assert lb.finalizers == [POOL_FINALIZER]
        assert lb.spec["addressType"] == "Internet"
        assert lb.spec["vpcId"] == "vpc-1"
        assert [m["allocationId"] for m in lb.spec["zoneMappings"]] == ["eip-a", "eip-b"]

    def test_intranet_load_balancer(self, adapter: ServiceAdapter) -> None:
        zone_maps = parse_zone_maps("vpc-1@cn-a:vsw-a,cn-b:vsw-b")
        lb = adapter.build_load_balancer("default", "x", "gss", "BGP-Intranet", 0, zone_maps, ["a", "b"], None)
        assert lb.spec["addressType"] == "Intranet"
        assert lb.finalizers == []
