"""Tests for lbnet.binding module."""

from collections.abc import Callable

import pytest

from lbnet.adapters import PROFILES, ServiceAdapter
from lbnet.allocator import PortAllocator
from lbnet.binding import BindingTarget, PooledBinder, SharedBinder
from lbnet.constants import REPLICA_FINALIZER, NetworkType
from lbnet.exceptions import ConfigurationError, DependencyNotReadyError, PortsExhaustedError
from lbnet.network_config import parse_network_config
from lbnet.prewarm import PrewarmingController
from lbnet.store import InMemoryObjectStore
from lbnet.types import Ingress, Replica, WorkloadSet
from tests.conftest import NAMESPACE, POOLED_CONF, SHARED_CONF, conf_json

FIXED_CONF = conf_json(LbIds="lb-1", PortProtocols="80/TCP", Fixed="true")


@pytest.fixture
def shared(allocator: PortAllocator, store: InMemoryObjectStore) -> SharedBinder:
    return SharedBinder(allocator, store)


@pytest.fixture
def prewarm(store: InMemoryObjectStore) -> PrewarmingController:
    return PrewarmingController(store, ServiceAdapter(store, PROFILES["alibabacloud"]))


@pytest.fixture
def pooled(prewarm: PrewarmingController, store: InMemoryObjectStore) -> PooledBinder:
    return PooledBinder(prewarm, store)


class TestSharedBinder:
    """Tests for shared load-balancer bindings."""

    def test_target_is_replica_name(self, shared: SharedBinder, make_replica: Callable[..., Replica]) -> None:
        replica = make_replica()
        assert shared.targets(replica, parse_network_config(SHARED_CONF)) == [BindingTarget("gss-0")]

    def test_acquire_is_stable(self, shared: SharedBinder, make_replica: Callable[..., Replica]) -> None:
        """Repeated acquires return the same binding owned by the replica."""
        replica = make_replica()
        conf = parse_network_config(SHARED_CONF)

        first = shared.acquire(replica, conf, BindingTarget("gss-0"))
        second = shared.acquire(replica, conf, BindingTarget("gss-0"))

        assert (first.load_balancer_id, first.ports) == ("lb-1", [500, 501])
        assert (second.load_balancer_id, second.ports) == (first.load_balancer_id, first.ports)
        assert first.owner_reference.kind == "Pod"
        assert first.workload_set is None

    def test_port_count_change_reallocates(
        self, shared: SharedBinder, allocator: PortAllocator, make_replica: Callable[..., Replica]
    ) -> None:
        """A record whose size no longer matches the ports is replaced."""
        replica = make_replica()
        shared.acquire(replica, parse_network_config(SHARED_CONF), BindingTarget("gss-0"))

        binding = shared.acquire(
            replica, parse_network_config(conf_json(LbIds="lb-1", PortProtocols="80,81,82")), BindingTarget("gss-0")
        )

        assert binding.ports == [500, 501, 502]
        allocator.verify_consistency()

    def test_failed_port_count_change_keeps_ports(
        self, store: InMemoryObjectStore, make_replica: Callable[..., Replica]
    ) -> None:
        """When the larger allocation does not fit, the live ports stay with their replica."""
        allocator = PortAllocator(500, 502, ready=True)
        binder = SharedBinder(allocator, store)
        one_port = parse_network_config(conf_json(LbIds="lb-1", PortProtocols="80"))
        binder.acquire(make_replica(name="a-0"), one_port, BindingTarget("a-0"))
        binder.acquire(make_replica(name="b-0"), one_port, BindingTarget("b-0"))

        with pytest.raises(PortsExhaustedError):
            binder.acquire(
                store.get_replica(NAMESPACE, "a-0"),
                parse_network_config(conf_json(LbIds="lb-1", PortProtocols="80,81")),
                BindingTarget("a-0"),
            )

        assert allocator.lookup(f"{NAMESPACE}/a-0").ports == [500]
        with pytest.raises(PortsExhaustedError):
            binder.acquire(make_replica(name="c-0"), one_port, BindingTarget("c-0"))
        allocator.verify_consistency()

    def test_scatter(self, shared: SharedBinder, make_replica: Callable[..., Replica]) -> None:
        """Scatter spreads replicas over the candidates."""
        conf = parse_network_config(conf_json(LbIds="lb-1,lb-2", PortProtocols="80", EnableScatter="true"))
        chosen = [
            shared.acquire(make_replica(name=f"gss-{i}"), conf, BindingTarget(f"gss-{i}")).load_balancer_id
            for i in range(4)
        ]
        assert chosen == ["lb-1", "lb-2", "lb-1", "lb-2"]

    def test_non_fixed_released_on_delete(
        self, shared: SharedBinder, allocator: PortAllocator, make_replica: Callable[..., Replica]
    ) -> None:
        replica = make_replica()
        conf = parse_network_config(SHARED_CONF)
        shared.acquire(replica, conf, BindingTarget("gss-0"))

        shared.on_deleted(replica, conf)

        assert replica.key not in allocator
        assert allocator.free_count("lb-1") == 20


class TestFixedBinding:
    """Tests for bindings that outlive their replica."""

    @pytest.mark.smoke
    def test_carryover_to_recreated_replica(
        self,
        shared: SharedBinder,
        allocator: PortAllocator,
        store: InMemoryObjectStore,
        make_workload_set: Callable[..., WorkloadSet],
        make_replica: Callable[..., Replica],
    ) -> None:
        """A recreated replica gets the ports its predecessor held."""
        ws = make_workload_set(conf=FIXED_CONF)
        conf = parse_network_config(FIXED_CONF)
        make_replica(name="gss-1", conf=FIXED_CONF)
        other = shared.acquire(store.get_replica(NAMESPACE, "gss-1"), conf, BindingTarget("gss-1"))
        first = make_replica(conf=FIXED_CONF)
        before = shared.acquire(first, conf, BindingTarget("gss-0"))
        assert before.owner_reference.uid == ws.uid
        assert before.workload_set == ws.key

        shared.on_deleted(first, conf)
        assert first.key in allocator

        recreated = make_replica(conf=FIXED_CONF)
        assert recreated.uid != first.uid
        after = shared.acquire(recreated, conf, BindingTarget("gss-0"))

        assert (after.load_balancer_id, after.ports) == (before.load_balancer_id, before.ports)
        assert after.ports != other.ports

    def test_released_with_workload_set(
        self,
        shared: SharedBinder,
        allocator: PortAllocator,
        store: InMemoryObjectStore,
        make_workload_set: Callable[..., WorkloadSet],
        make_replica: Callable[..., Replica],
    ) -> None:
        """Once the workload set is gone every fixed record of it is freed."""
        make_workload_set(conf=FIXED_CONF)
        conf = parse_network_config(FIXED_CONF)
        for i in range(3):
            shared.acquire(make_replica(name=f"gss-{i}", conf=FIXED_CONF), conf, BindingTarget(f"gss-{i}"))

        store.delete_workload_set(NAMESPACE, "gss")
        shared.on_deleted(store.get_replica(NAMESPACE, "gss-2"), conf)

        assert len(allocator) == 0
        allocator.verify_consistency()

    def test_switching_on_fixed_tags_existing_record(
        self,
        shared: SharedBinder,
        allocator: PortAllocator,
        store: InMemoryObjectStore,
        make_workload_set: Callable[..., WorkloadSet],
        make_replica: Callable[..., Replica],
    ) -> None:
        """A record made before Fixed was set is still freed with its workload set."""
        ws = make_workload_set(conf=FIXED_CONF)
        replica = make_replica(conf=FIXED_CONF)
        not_fixed = parse_network_config(conf_json(LbIds="lb-1", PortProtocols="80/TCP"))
        assert shared.acquire(replica, not_fixed, BindingTarget("gss-0")).workload_set is None

        fixed = shared.acquire(replica, parse_network_config(FIXED_CONF), BindingTarget("gss-0"))
        assert fixed.workload_set == ws.key

        store.delete_workload_set(NAMESPACE, "gss")
        shared.on_deleted(replica, parse_network_config(FIXED_CONF))

        assert len(allocator) == 0


class TestPooledBinder:
    """Tests for prewarmed slot bindings."""

    def test_targets_per_line_type(self, pooled: PooledBinder, make_replica: Callable[..., Replica]) -> None:
        conf = parse_network_config(
            conf_json(PortProtocols="7777/UDP", ZoneMaps="vpc@a:x,b:y", LineTypes="BGP,ChinaMobile"),
            NetworkType.POOLED_LB,
        )
        replica = make_replica(network_type=NetworkType.POOLED_LB)
        assert pooled.targets(replica, conf) == [
            BindingTarget("gss-0-bgp", "BGP"),
            BindingTarget("gss-0-chinamobile", "ChinaMobile"),
        ]

    def test_replica_without_index(self, pooled: PooledBinder, make_replica: Callable[..., Replica]) -> None:
        conf = parse_network_config(POOLED_CONF, NetworkType.POOLED_LB)
        replica = make_replica(name="gss", network_type=NetworkType.POOLED_LB, conf=POOLED_CONF)
        with pytest.raises(ConfigurationError):
            pooled.acquire(replica, conf, BindingTarget("gss-bgp", "BGP"))

    def test_missing_workload_set(self, pooled: PooledBinder, make_replica: Callable[..., Replica]) -> None:
        conf = parse_network_config(POOLED_CONF, NetworkType.POOLED_LB)
        replica = make_replica(network_type=NetworkType.POOLED_LB, conf=POOLED_CONF)
        with pytest.raises(DependencyNotReadyError):
            pooled.acquire(replica, conf, BindingTarget("gss-0-bgp", "BGP"))

    def test_waits_for_load_balancer(
        self,
        pooled: PooledBinder,
        make_workload_set: Callable[..., WorkloadSet],
        make_replica: Callable[..., Replica],
        report_pool_ids: Callable[[], int],
    ) -> None:
        """Acquire creates the pool entry on demand and binds once it is ready."""
        make_workload_set(network_type=NetworkType.POOLED_LB, conf=POOLED_CONF)
        conf = parse_network_config(POOLED_CONF, NetworkType.POOLED_LB)
        replica = make_replica(name="gss-4", network_type=NetworkType.POOLED_LB, conf=POOLED_CONF)
        target = BindingTarget("gss-4-bgp", "BGP")

        with pytest.raises(DependencyNotReadyError):
            pooled.acquire(replica, conf, target)
        assert report_pool_ids() == 2
        with pytest.raises(DependencyNotReadyError):
            pooled.acquire(replica, conf, target)
        assert report_pool_ids() == 1

        binding = pooled.acquire(replica, conf, target)

        assert binding.load_balancer_id == "nlb-gss-bgp-1"
        assert binding.ports == [1001]
        assert binding.line_type == "BGP"
        assert binding.owner_reference.kind == "GameServerSet"

    def test_on_added_attaches_finalizer(
        self, pooled: PooledBinder, prewarm: PrewarmingController, make_replica: Callable[..., Replica]
    ) -> None:
        conf = parse_network_config(POOLED_CONF, NetworkType.POOLED_LB)
        replica = pooled.on_added(make_replica(name="gss-5", network_type=NetworkType.POOLED_LB, conf=POOLED_CONF), conf)
        assert REPLICA_FINALIZER in replica.finalizers
        assert prewarm.max_index_seen(f"{NAMESPACE}/gss") == 5

    def test_endpoint(self, pooled: PooledBinder, shared: SharedBinder) -> None:
        """Pooled endpoints carry the line type, shared ones are the hostname."""
        ingress = Ingress(ip="1.2.3.4", hostname="nlb.example.com")
        assert pooled.endpoint(ingress, BindingTarget("gss-0-bgp", "BGP")) == "nlb.example.com/BGP"
        assert pooled.endpoint(Ingress(ip="1.2.3.4"), BindingTarget("gss-0-bgp", "BGP")) == ""
        assert shared.endpoint(ingress, BindingTarget("gss-0")) == "nlb.example.com"
