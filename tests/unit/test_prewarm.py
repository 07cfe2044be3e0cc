"""Tests for lbnet.prewarm module."""

from collections.abc import Callable

import pytest

from lbnet.adapters import PROFILES, ServiceAdapter
from lbnet.constants import (
    OWNER_WORKLOAD_SET_KEY,
    POOL_FINALIZER,
    REPLICA_FINALIZER,
    NetworkType,
    PoolResourceKind,
)
from lbnet.exceptions import ConfigurationError, DependencyNotReadyError
from lbnet.network_config import NetworkConfig, parse_network_config
from lbnet.prewarm import (
    PrewarmingController,
    elastic_ip_name,
    expected_count,
    load_balancer_name,
    network_object_name,
)
from lbnet.store import InMemoryObjectStore
from lbnet.types import Replica, WorkloadSet
from tests.conftest import NAMESPACE, POOLED_CONF, conf_json


@pytest.fixture
def prewarm(store: InMemoryObjectStore) -> PrewarmingController:
    return PrewarmingController(store, ServiceAdapter(store, PROFILES["alibabacloud"]))


@pytest.fixture
def conf() -> NetworkConfig:
    return parse_network_config(POOLED_CONF, NetworkType.POOLED_LB)


@pytest.fixture
def pooled_ws(make_workload_set: Callable[..., WorkloadSet]) -> WorkloadSet:
    return make_workload_set(network_type=NetworkType.POOLED_LB, conf=POOLED_CONF)


def warm_up(
    prewarm: PrewarmingController,
    ws: WorkloadSet,
    conf: NetworkConfig,
    report_pool_ids: Callable[[], int],
) -> None:
    """Run passes until the pool and its prewarmed objects exist."""
    prewarm.seed(ws)
    prewarm.reconcile(ws.namespace, ws.name, conf)
    report_pool_ids()
    prewarm.reconcile(ws.namespace, ws.name, conf)
    report_pool_ids()
    prewarm.reconcile(ws.namespace, ws.name, conf)


class TestExpectedCount:
    """Tests for the pool size formula."""

    @pytest.mark.parametrize(
        ("max_index", "pods", "reserve", "expected"),
        [(5, 3, 1, 3), (0, 3, 0, 1), (2, 3, 0, 1), (3, 3, 0, 2), (7, 3, 1, 4), (4, 0, 2, 1)],
    )
    def test_formula(self, max_index: int, pods: int, reserve: int, expected: int) -> None:
        assert expected_count(max_index, pods, reserve) == expected


class TestNames:
    """Tests for derived resource names."""

    def test_names(self) -> None:
        assert load_balancer_name("gss", "BGP", 2) == "gss-bgp-2"
        assert elastic_ip_name("gss", "ChinaMobile", 0, 1) == "gss-eip-chinamobile-0-z1"
        assert network_object_name("gss-3", "BGP") == "gss-3-bgp"


class TestHighWaterMark:
    """Tests for the monotonic replica index mark."""

    def test_never_decreases(self, prewarm: PrewarmingController, make_replica: Callable[..., Replica]) -> None:
        assert prewarm.observe(make_replica(name="gss-7")) == 7
        assert prewarm.observe(make_replica(name="gss-2")) == 7
        assert prewarm.max_index_seen(f"{NAMESPACE}/gss") == 7

    def test_seed_uses_replica_count(self, prewarm: PrewarmingController, pooled_ws: WorkloadSet, conf: NetworkConfig) -> None:
        prewarm.seed(pooled_ws)
        assert prewarm.max_index_seen(pooled_ws.key) == 3
        assert prewarm.expected_count(NAMESPACE, "gss", conf) == 3


class TestReconcile:
    """Tests for one prewarming pass."""

    @pytest.mark.smoke
    def test_staged_creation(
        self,
        prewarm: PrewarmingController,
        store: InMemoryObjectStore,
        pooled_ws: WorkloadSet,
        conf: NetworkConfig,
        report_pool_ids: Callable[[], int],
    ) -> None:
        """Elastic IPs first, load balancers once ids exist, then the objects."""
        prewarm.seed(pooled_ws)

        first = prewarm.reconcile(NAMESPACE, "gss", conf)
        assert first.expected_count == 3
        assert len(first.created_elastic_ips) == 6
        assert first.created_load_balancers == []
        assert first.pending == ["gss-bgp-0", "gss-bgp-1", "gss-bgp-2"]

        assert report_pool_ids() == 6
        second = prewarm.reconcile(NAMESPACE, "gss", conf)
        assert second.created_load_balancers == ["gss-bgp-0", "gss-bgp-1", "gss-bgp-2"]
        assert second.objects_created == 0

        assert report_pool_ids() == 3
        third = prewarm.reconcile(NAMESPACE, "gss", conf)
        assert third.success
        assert third.existing == {"BGP": 3}
        assert third.objects_created == 9

        obj = store.get_network_object(NAMESPACE, "gss-4-bgp")
        assert obj.port_numbers() == [1001]
        assert obj.labels[PROFILES["alibabacloud"].lb_id_label] == "nlb-gss-bgp-1"
        assert obj.labels[OWNER_WORKLOAD_SET_KEY] == "gss"
        assert obj.owner_reference.uid == pooled_ws.uid
        assert obj.external_traffic_policy == "Local"

        lb = store.get_pool_resource(PoolResourceKind.LOAD_BALANCER, NAMESPACE, "gss-bgp-1")
        assert lb.finalizers == [POOL_FINALIZER]
        assert [m["allocationId"] for m in lb.spec["zoneMappings"]] == [
            "eipalloc-gss-eip-bgp-1-z0",
            "eipalloc-gss-eip-bgp-1-z1",
        ]

    def test_idempotent(
        self,
        prewarm: PrewarmingController,
        pooled_ws: WorkloadSet,
        conf: NetworkConfig,
        report_pool_ids: Callable[[], int],
    ) -> None:
        """A pass over a complete pool creates nothing."""
        warm_up(prewarm, pooled_ws, conf, report_pool_ids)

        result = prewarm.reconcile(NAMESPACE, "gss", conf)

        assert result.created_elastic_ips == []
        assert result.created_load_balancers == []
        assert result.objects_created == 0
        assert result.objects_skipped == 9

    def test_grows_with_high_water_mark(
        self,
        prewarm: PrewarmingController,
        pooled_ws: WorkloadSet,
        conf: NetworkConfig,
        make_replica: Callable[..., Replica],
        report_pool_ids: Callable[[], int],
    ) -> None:
        """A higher replica index adds pool entries."""
        warm_up(prewarm, pooled_ws, conf, report_pool_ids)
        prewarm.observe(make_replica(name="gss-7", network_type=NetworkType.POOLED_LB, conf=POOLED_CONF))

        result = prewarm.reconcile(NAMESPACE, "gss", conf)

        assert result.expected_count == 4
        assert result.pending == ["gss-bgp-3"]

    def test_missing_workload_set(self, prewarm: PrewarmingController, conf: NetworkConfig) -> None:
        result = prewarm.reconcile(NAMESPACE, "nope", conf)
        assert not result.success

    def test_deleting_workload_set_skipped(
        self, prewarm: PrewarmingController, store: InMemoryObjectStore, pooled_ws: WorkloadSet, conf: NetworkConfig
    ) -> None:
        pooled_ws.deleting = True
        store.put_workload_set(pooled_ws)

        result = prewarm.reconcile(NAMESPACE, "gss", conf)

        assert result.skipped
        assert store.list_pool_resources(PoolResourceKind.ELASTIC_IP) == []

    def test_retained_pool_has_no_owner(
        self,
        prewarm: PrewarmingController,
        store: InMemoryObjectStore,
        make_workload_set: Callable[..., WorkloadSet],
        report_pool_ids: Callable[[], int],
    ) -> None:
        """Retained pools are not owned and carry no finalizer."""
        raw = conf_json(PortProtocols="7777/UDP", MinPort=1000, MaxPort=1003, ZoneMaps="vpc@a:x,b:y", ReserveNum=0)
        ws = make_workload_set(replicas=0, network_type=NetworkType.POOLED_LB, conf=raw)
        conf = parse_network_config(raw, NetworkType.POOLED_LB)

        prewarm.reconcile(NAMESPACE, ws.name, conf)
        report_pool_ids()
        prewarm.reconcile(NAMESPACE, ws.name, conf)

        [lb] = store.list_pool_resources(PoolResourceKind.LOAD_BALANCER)
        assert lb.owner_reference is None
        assert lb.finalizers == []

    def test_ensure_entry_requires_zone_maps(self, prewarm: PrewarmingController, pooled_ws: WorkloadSet) -> None:
        conf = parse_network_config(conf_json(LbIds="lb-1", PortProtocols="80"))
        with pytest.raises(ConfigurationError):
            prewarm.ensure_entry(pooled_ws, "BGP", 0, conf)


class TestCascadingDeletion:
    """Tests for the two-phase finalizer release."""

    def _replica_with_finalizer(
        self, prewarm: PrewarmingController, store: InMemoryObjectStore, make_replica: Callable[..., Replica], conf: NetworkConfig
    ) -> Replica:
        replica = make_replica(network_type=NetworkType.POOLED_LB, conf=POOLED_CONF)
        return store.update_replica(prewarm.attach_replica_finalizer(replica, conf))

    def test_live_workload_set_releases_at_once(
        self,
        prewarm: PrewarmingController,
        store: InMemoryObjectStore,
        pooled_ws: WorkloadSet,
        conf: NetworkConfig,
        make_replica: Callable[..., Replica],
        report_pool_ids: Callable[[], int],
    ) -> None:
        """A replica replaced within a live workload set drops its finalizer right away."""
        warm_up(prewarm, pooled_ws, conf, report_pool_ids)
        replica = self._replica_with_finalizer(prewarm, store, make_replica, conf)
        store.delete_replica(NAMESPACE, "gss-0")

        prewarm.release_replica(store.get_replica(NAMESPACE, "gss-0"), conf)

        assert store.get_replica(NAMESPACE, "gss-0") is None
        assert store.get_network_object(NAMESPACE, replica.name + "-bgp") is not None

    @pytest.mark.smoke
    def test_workload_set_deletion(
        self,
        prewarm: PrewarmingController,
        store: InMemoryObjectStore,
        pooled_ws: WorkloadSet,
        conf: NetworkConfig,
        make_replica: Callable[..., Replica],
        report_pool_ids: Callable[[], int],
    ) -> None:
        """Replica finalizers wait for the objects, pool finalizers wait for all objects."""
        warm_up(prewarm, pooled_ws, conf, report_pool_ids)
        self._replica_with_finalizer(prewarm, store, make_replica, conf)

        store.delete_workload_set(NAMESPACE, "gss")
        store.delete_replica(NAMESPACE, "gss-0")

        with pytest.raises(DependencyNotReadyError):
            prewarm.release_replica(store.get_replica(NAMESPACE, "gss-0"), conf)
        assert REPLICA_FINALIZER in store.get_replica(NAMESPACE, "gss-0").finalizers

        store.collect_garbage()
        assert store.list_network_objects(NAMESPACE) == []
        assert all(lb.deleting for lb in store.list_pool_resources(PoolResourceKind.LOAD_BALANCER))

        prewarm.release_replica(store.get_replica(NAMESPACE, "gss-0"), conf)

        assert store.get_replica(NAMESPACE, "gss-0") is None
        assert store.list_pool_resources(PoolResourceKind.LOAD_BALANCER) == []

    def test_retained_pool_is_untouched(
        self, prewarm: PrewarmingController, make_replica: Callable[..., Replica]
    ) -> None:
        """With RetainOnDelete no finalizer is added or removed."""
        raw = conf_json(PortProtocols="7777/UDP", ZoneMaps="vpc@a:x,b:y")
        conf = parse_network_config(raw, NetworkType.POOLED_LB)
        replica = prewarm.attach_replica_finalizer(make_replica(network_type=NetworkType.POOLED_LB, conf=raw), conf)
        assert replica.finalizers == []
        prewarm.release_replica(replica, conf)

    def test_release_pool_finalizers_skips_live(
        self,
        prewarm: PrewarmingController,
        pooled_ws: WorkloadSet,
        conf: NetworkConfig,
        report_pool_ids: Callable[[], int],
    ) -> None:
        """Load balancers that are not deleting keep their finalizer."""
        warm_up(prewarm, pooled_ws, conf, report_pool_ids)
        assert prewarm.release_pool_finalizers(NAMESPACE, "gss", conf) == 0
