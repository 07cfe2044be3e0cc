"""Tests for lbnet.cold_start module."""

import threading
from typing import Any
from unittest.mock import patch

import pytest

from lbnet.adapters import PROFILES, Binding, ServiceAdapter
from lbnet.allocator import PortAllocator
from lbnet.cold_start import ColdStartReconstructor
from lbnet.constants import NETWORK_TYPE_KEY, NetworkType
from lbnet.network_config import parse_network_config
from lbnet.store import InMemoryObjectStore
from lbnet.types import AllocationRecord, NetworkObject, ServicePort
from tests.conftest import NAMESPACE, SHARED_CONF

LB_LABEL = PROFILES["alibabacloud"].lb_id_label


def make_object(name: str, lb_id: str, ports: list[int], **labels: str) -> NetworkObject:
    """Build a network object exposing ``ports`` on ``lb_id``."""
    return NetworkObject(
        namespace=NAMESPACE,
        name=name,
        labels={LB_LABEL: lb_id, **labels} if lb_id else dict(labels),
        ports=[ServicePort(f"{p}-TCP", p, "TCP", 80) for p in ports],
    )


@pytest.fixture
def adapter(store: InMemoryObjectStore) -> ServiceAdapter:
    return ServiceAdapter(store, PROFILES["alibabacloud"])


@pytest.fixture
def fresh() -> PortAllocator:
    return PortAllocator(500, 520, block_ports=[505])


class TestFidelity:
    """Tests that a rebuild matches the state that produced the objects."""

    @pytest.mark.smoke
    def test_rebuild_matches_direct_allocation(
        self, store: InMemoryObjectStore, adapter: ServiceAdapter, fresh: PortAllocator
    ) -> None:
        """Objects created from a live allocator rebuild to identical state."""
        live = PortAllocator(500, 520, block_ports=[505], ready=True)
        conf = parse_network_config(SHARED_CONF)
        for i in range(5):
            record = live.assign(f"{NAMESPACE}/gss-{i}", conf.lb_ids, len(conf.ports))
            binding = Binding(record.owner_key, record.load_balancer_id, record.ports)
            obj = adapter.build_network_object(NAMESPACE, f"gss-{i}", f"gss-{i}", binding, conf, NetworkType.SHARED_LB)
            adapter.create_network_object(obj)
        live.release(f"{NAMESPACE}/gss-1")
        store.delete_network_object(NAMESPACE, "gss-1")

        result = ColdStartReconstructor(store, fresh, adapter).reconstruct()

        assert result.clean
        assert result.records_rebuilt == 4
        expected, actual = live.snapshot(), fresh.snapshot()
        assert actual.records == expected.records
        assert actual.bitmaps == expected.bitmaps
        fresh.verify_consistency()

    def test_blocked_ports_stay_booked(self, store: InMemoryObjectStore, adapter: ServiceAdapter, fresh: PortAllocator) -> None:
        """Blocked ports are booked whether or not any object claims them."""
        store.put_network_object(make_object("a", "L1", [505, 506]))

        ColdStartReconstructor(store, fresh, adapter).reconstruct()

        bitmap = fresh.snapshot().bitmaps["L1"]
        assert bitmap.is_booked(505)
        assert fresh.lookup(f"{NAMESPACE}/a").ports == [506]


class TestDeterminism:
    """Tests for order independence and idempotence."""

    def test_listing_order_does_not_matter(self, adapter: ServiceAdapter, fresh: PortAllocator) -> None:
        """Reversed input yields the same bitmaps, records and divergences."""
        objects = [
            make_object("c", "L1", [500, 501]),
            make_object("a", "L1", [501, 502]),
            make_object("b", "L2", [500]),
        ]
        reconstructor = ColdStartReconstructor(InMemoryObjectStore(), fresh, adapter)

        bitmaps_1, records_1, result_1 = reconstructor.rebuild(objects)
        bitmaps_2, records_2, result_2 = reconstructor.rebuild(list(reversed(objects)))

        assert bitmaps_1 == bitmaps_2
        assert records_1 == records_2
        assert [d.to_dict() for d in result_1.divergences] == [d.to_dict() for d in result_2.divergences]

    def test_reconstruct_twice_is_idempotent(
        self, store: InMemoryObjectStore, adapter: ServiceAdapter, fresh: PortAllocator
    ) -> None:
        """A second pass over unchanged objects installs identical state."""
        store.put_network_object(make_object("a", "L1", [500, 501]))
        store.put_network_object(make_object("b", "L2", [510]))
        reconstructor = ColdStartReconstructor(store, fresh, adapter)

        reconstructor.reconstruct()
        first = fresh.snapshot()
        reconstructor.reconstruct()
        second = fresh.snapshot()

        assert first.records == second.records
        assert first.bitmaps == second.bitmaps


class TestDivergence:
    """Tests for ports claimed by several objects."""

    def test_first_in_order_keeps_port(self, store: InMemoryObjectStore, adapter: ServiceAdapter, fresh: PortAllocator) -> None:
        """The conflicting port stays with the object that sorts first."""
        store.put_network_object(make_object("b", "L1", [500, 501]))
        store.put_network_object(make_object("a", "L1", [500]))

        result = ColdStartReconstructor(store, fresh, adapter).reconstruct()

        assert not result.clean
        divergence = result.divergences[0]
        assert (divergence.load_balancer_id, divergence.port) == ("L1", 500)
        assert divergence.kept_owner == f"{NAMESPACE}/a"
        assert divergence.dropped_owner == f"{NAMESPACE}/b"
        assert fresh.lookup(f"{NAMESPACE}/b").ports == [501]
        fresh.verify_consistency()


class TestSkips:
    """Tests for objects that do not contribute state."""

    def test_unlabelled_and_pooled_objects_ignored(
        self, store: InMemoryObjectStore, adapter: ServiceAdapter, fresh: PortAllocator
    ) -> None:
        """Objects without the id label or of the pooled type are not accounted."""
        store.put_network_object(make_object("plain", "", [500]))
        store.put_network_object(make_object("pooled", "nlb-1", [1000], **{NETWORK_TYPE_KEY: NetworkType.POOLED_LB.value}))

        result = ColdStartReconstructor(store, fresh, adapter).reconstruct()

        assert result.objects_scanned == 2
        assert result.records_rebuilt == 0
        assert fresh.snapshot().bitmaps == {}
        assert fresh.ready

    def test_out_of_range_ports_skipped(self, store: InMemoryObjectStore, adapter: ServiceAdapter, fresh: PortAllocator) -> None:
        """An object whose ports all lie outside the range is reported as skipped."""
        store.put_network_object(make_object("far", "L1", [8080]))

        result = ColdStartReconstructor(store, fresh, adapter).reconstruct()

        assert result.skipped == [f"{NAMESPACE}/far"]
        assert f"{NAMESPACE}/far" not in fresh


class TestConcurrentRebuild:
    """Tests for rebuilds racing live allocations."""

    def test_assign_during_listing_is_kept(self, store: InMemoryObjectStore, adapter: ServiceAdapter) -> None:
        """An assign issued while objects are listed lands on top of the rebuilt state."""
        allocator = PortAllocator(500, 520, ready=True)
        store.create_network_object(make_object("gss-0", "lb-1", [500]))
        results: list[AllocationRecord] = []
        worker = threading.Thread(
            target=lambda: results.append(allocator.assign(f"{NAMESPACE}/gss-1", ["lb-1"], 1))
        )
        listing = store.list_network_objects

        def list_then_race(*args: Any, **kwargs: Any) -> list[NetworkObject]:
            objects = listing(*args, **kwargs)
            worker.start()
            worker.join(0.1)
            return objects

        with patch.object(store, "list_network_objects", side_effect=list_then_race):
            ColdStartReconstructor(store, allocator, adapter).reconstruct()
        worker.join(1.0)

        assert [r.ports for r in results] == [[501]]
        assert sorted(allocator.snapshot().records) == [f"{NAMESPACE}/gss-0", f"{NAMESPACE}/gss-1"]
        allocator.verify_consistency()
