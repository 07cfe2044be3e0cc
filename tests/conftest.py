"""Pytest configuration and fixtures for lbnet tests."""

import json
from collections.abc import Callable
from typing import Any

import pytest

from lbnet.allocator import PortAllocator
from lbnet.config import AllocatorConfig, LbnetConfig
from lbnet.constants import (
    NETWORK_CONF_KEY,
    NETWORK_DISABLED_KEY,
    NETWORK_TYPE_KEY,
    OWNER_WORKLOAD_SET_KEY,
    NetworkType,
    PoolResourceKind,
)
from lbnet.engine import NetworkEngine
from lbnet.store import InMemoryObjectStore
from lbnet.types import Ingress, Replica, WorkloadSet

NAMESPACE = "default"


def conf_json(**params: Any) -> str:
    """Encode keyword arguments as the ``[{name, value}]`` configuration list."""
    return json.dumps([{"name": k, "value": str(v)} for k, v in params.items()])


SHARED_CONF = conf_json(LbIds="lb-1,lb-2", PortProtocols="80/TCP,7777/UDP")
POOLED_CONF = conf_json(
    PortProtocols="7777/UDP",
    MinPort=1000,
    MaxPort=1003,
    ZoneMaps="vpc-1@cn-a:vsw-a,cn-b:vsw-b",
    RetainOnDelete="false",
    ReserveNum=1,
)


@pytest.fixture
def store() -> InMemoryObjectStore:
    """Empty in-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def lbnet_config() -> LbnetConfig:
    """Configuration with the shared range [500, 520)."""
    return LbnetConfig(allocator=AllocatorConfig(min_port=500, max_port=520))


@pytest.fixture
def allocator() -> PortAllocator:
    """Ready allocator over [500, 520)."""
    return PortAllocator(500, 520, ready=True)


@pytest.fixture
def engine(lbnet_config: LbnetConfig, store: InMemoryObjectStore) -> NetworkEngine:
    """Initialized engine over the in-memory store."""
    eng = NetworkEngine(lbnet_config, store)
    eng.initialize()
    return eng


@pytest.fixture
def make_workload_set(store: InMemoryObjectStore) -> Callable[..., WorkloadSet]:
    """Factory storing a workload set.

    Returns:
        Callable taking ``name``, ``replicas``, ``network_type`` and ``conf``
    """

    def _make(
        name: str = "gss",
        replicas: int = 3,
        network_type: NetworkType = NetworkType.SHARED_LB,
        conf: str = SHARED_CONF,
        namespace: str = NAMESPACE,
    ) -> WorkloadSet:
        ws = WorkloadSet(
            namespace=namespace,
            name=name,
            replicas=replicas,
            annotations={NETWORK_TYPE_KEY: network_type.value, NETWORK_CONF_KEY: conf},
        )
        return store.put_workload_set(ws)

    return _make


@pytest.fixture
def make_replica(store: InMemoryObjectStore) -> Callable[..., Replica]:
    """Factory storing a replica.

    Returns:
        Callable taking ``name``, ``workload_set``, ``network_type``, ``conf`` and ``disabled``
    """

    def _make(
        name: str = "gss-0",
        workload_set: str = "gss",
        network_type: NetworkType = NetworkType.SHARED_LB,
        conf: str = SHARED_CONF,
        disabled: bool = False,
        namespace: str = NAMESPACE,
        pod_ip: str = "10.0.0.1",
    ) -> Replica:
        replica = Replica(
            namespace=namespace,
            name=name,
            labels={OWNER_WORKLOAD_SET_KEY: workload_set},
            annotations={NETWORK_TYPE_KEY: network_type.value, NETWORK_CONF_KEY: conf},
            pod_ip=pod_ip,
        )
        if disabled:
            replica.labels[NETWORK_DISABLED_KEY] = "true"
        return store.put_replica(replica)

    return _make


@pytest.fixture
def report_ingress(store: InMemoryObjectStore) -> Callable[..., None]:
    """Simulate the vendor controller reporting an ingress address."""

    def _report(name: str, ip: str = "47.0.0.1", hostname: str = "", namespace: str = NAMESPACE) -> None:
        obj = store.get_network_object(namespace, name)
        assert obj is not None, f"network object {name} missing"
        obj.ingress = [Ingress(ip=ip, hostname=hostname)]
        store.put_network_object(obj)

    return _report


@pytest.fixture
def report_pool_ids(store: InMemoryObjectStore) -> Callable[[], int]:
    """Simulate the vendor reporting ids for every pool resource lacking one."""

    def _report() -> int:
        reported = 0
        for kind, prefix in ((PoolResourceKind.ELASTIC_IP, "eipalloc"), (PoolResourceKind.LOAD_BALANCER, "nlb")):
            for resource in store.list_pool_resources(kind):
                if resource.resource_id:
                    continue
                resource.resource_id = f"{prefix}-{resource.name}"
                if kind is PoolResourceKind.LOAD_BALANCER:
                    resource.address = f"{resource.name}.nlb.example.com"
                store.put_pool_resource(resource)
                reported += 1
        return reported

    return _report


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
