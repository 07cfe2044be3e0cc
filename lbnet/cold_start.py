"""Cold-start reconstruction of allocator state from live network objects.

The allocator keeps no private store. At startup every network object
that carries a load-balancer-id label is listed, and the bitmaps and
allocation records are rebuilt from the ports those objects expose.
The rebuilt state is installed in one step under the allocator lock;
lifecycle calls arriving earlier block until then.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from lbnet.adapters.base import NetworkAdapter
from lbnet.allocator import PortAllocator
from lbnet.constants import NETWORK_TYPE_KEY, OWNER_KEY_ANNOTATION, WORKLOAD_SET_ANNOTATION, NetworkType
from lbnet.logging import get_logger
from lbnet.port_bitmap import PortBitmap
from lbnet.store import ObjectStore
from lbnet.types import AllocationRecord, NetworkObject

logger = get_logger("cold_start")


@dataclass
class Divergence:
    """A port claimed by more than one network object."""

    load_balancer_id: str
    port: int
    kept_owner: str
    dropped_owner: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "load_balancer_id": self.load_balancer_id,
            "port": self.port,
            "kept_owner": self.kept_owner,
            "dropped_owner": self.dropped_owner,
        }


@dataclass
class ReconstructionResult:
    """Outcome of one reconstruction pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    objects_scanned: int = 0
    records_rebuilt: int = 0
    load_balancers: int = 0
    skipped: list[str] = field(default_factory=list)
    divergences: list[Divergence] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """Check if no port was claimed twice."""
        return len(self.divergences) == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "objects_scanned": self.objects_scanned,
            "records_rebuilt": self.records_rebuilt,
            "load_balancers": self.load_balancers,
            "skipped": list(self.skipped),
            "divergences": [d.to_dict() for d in self.divergences],
            "clean": self.clean,
        }


class ColdStartReconstructor:
    """Rebuild ``PortAllocator`` state by listing network objects."""

    def __init__(self, store: ObjectStore, allocator: PortAllocator, adapter: NetworkAdapter) -> None:
        """Initialize ColdStartReconstructor.

        Args:
            store: Cluster object store to list from
            allocator: Allocator that receives the rebuilt state
            adapter: Vendor adapter naming the load-balancer-id label
        """
        self._store = store
        self._allocator = allocator
        self._adapter = adapter

    def rebuild(
        self, objects: list[NetworkObject], result: ReconstructionResult | None = None
    ) -> tuple[dict[str, PortBitmap], dict[str, AllocationRecord], ReconstructionResult]:
        """Compute bitmaps and records for a set of objects without installing them.

        Objects are processed in ``namespace/name`` order so a conflicting
        port always goes to the same object whatever the listing order.

        Args:
            objects: Network objects to account for
            result: Result to fill, a new one when omitted

        Returns:
            Tuple of (bitmaps, records, result)
        """
        result = result or ReconstructionResult()
        label = self._adapter.profile.lb_id_label
        bitmaps: dict[str, PortBitmap] = {}
        records: dict[str, AllocationRecord] = {}
        port_owner: dict[tuple[str, int], str] = {}

        for obj in sorted(objects, key=lambda o: (o.namespace, o.name)):
            result.objects_scanned += 1
            lb_id = obj.labels.get(label, "")
            if not lb_id:
                continue
            # Pooled objects use fixed slot ports, not allocator ports
            if obj.labels.get(NETWORK_TYPE_KEY) == NetworkType.POOLED_LB.value:
                continue

            owner_key = obj.annotations.get(OWNER_KEY_ANNOTATION) or obj.key
            if owner_key in records:
                logger.warning(f"Owner {owner_key} already rebuilt, skipping {obj.key}")
                result.skipped.append(obj.key)
                continue

            bitmap = bitmaps.get(lb_id)
            if bitmap is None:
                bitmap = self._allocator.new_bitmap()
            in_range = [p for p in obj.port_numbers() if p in bitmap and not bitmap.is_blocked(p)]
            marked, conflicts = bitmap.mark(in_range)
            for port in conflicts:
                divergence = Divergence(lb_id, port, port_owner[(lb_id, port)], owner_key)
                result.divergences.append(divergence)
                logger.warning(
                    f"Port {port} on {lb_id} claimed by {owner_key} but kept by {divergence.kept_owner}"
                )

            if not marked:
                result.skipped.append(obj.key)
                continue

            bitmaps[lb_id] = bitmap
            for port in marked:
                port_owner[(lb_id, port)] = owner_key
            records[owner_key] = AllocationRecord(
                owner_key=owner_key,
                load_balancer_id=lb_id,
                ports=marked,
                workload_set=obj.annotations.get(WORKLOAD_SET_ANNOTATION),
            )

        result.records_rebuilt = len(records)
        result.load_balancers = len(bitmaps)
        return bitmaps, records, result

    def reconstruct(self, namespace: str | None = None) -> ReconstructionResult:
        """List network objects and install the rebuilt state.

        Running it again over unchanged objects installs identical state.
        The listing runs under the allocator lock, so an allocation made
        by another thread cannot slip in between listing and install.

        Args:
            namespace: Restrict listing to one namespace

        Returns:
            ReconstructionResult describing the pass
        """
        result = ReconstructionResult()

        def build() -> tuple[dict[str, PortBitmap], dict[str, AllocationRecord]]:
            bitmaps, records, _ = self.rebuild(self._store.list_network_objects(namespace), result)
            return bitmaps, records

        self._allocator.rebuild(build)
        logger.info(
            f"Cold start rebuilt {result.records_rebuilt} records on {result.load_balancers} load balancers "
            f"from {result.objects_scanned} objects ({len(result.divergences)} divergences)"
        )
        return result
