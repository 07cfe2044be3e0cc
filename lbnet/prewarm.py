"""Prewarming of pooled load balancers and elastic IPs per workload set.

Keeps ``expected_count`` load balancers per line type ahead of demand,
where the count follows a high-water mark of replica indices that never
decreases. Each load balancer is created only after one elastic IP per
zone has reported its allocation id, and once it reports its own id the
per-replica network objects it can serve are created before any such
replica exists.

Cascading deletion is two-phase. A replica of a non-retained pool
carries a finalizer until its network objects are gone; once a query
shows no network object of the workload set remains, the finalizers of
the deleting pool load balancers are removed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from lbnet.adapters.base import Binding, NetworkAdapter
from lbnet.constants import (
    OWNER_WORKLOAD_SET_KEY,
    POOL_FINALIZER,
    POOL_INDEX_LABEL,
    POOL_LINE_TYPE_LABEL,
    POOL_WORKLOAD_SET_LABEL,
    REPLICA_FINALIZER,
    NetworkType,
    PoolResourceKind,
)
from lbnet.exceptions import AlreadyExistsError, ApiCallError, ConfigurationError, DependencyNotReadyError
from lbnet.logging import get_logger
from lbnet.network_config import NetworkConfig
from lbnet.store import ObjectStore
from lbnet.types import PoolResource, Replica, WorkloadSet, object_key

logger = get_logger("prewarm")


def expected_count(max_index_seen: int, pods_per_resource: int, reserve: int) -> int:
    """Number of pool load balancers a workload set should have.

    Args:
        max_index_seen: Highest replica index observed
        pods_per_resource: Replicas served by one load balancer
        reserve: Spare load balancers kept ahead of demand

    Returns:
        ``max_index_seen // pods_per_resource + reserve + 1``, at least 1
    """
    if pods_per_resource <= 0:
        return 1
    return max(1, max_index_seen // pods_per_resource + reserve + 1)


def load_balancer_name(workload_set: str, line_type: str, pool_index: int) -> str:
    return f"{workload_set}-{line_type.lower()}-{pool_index}"


def elastic_ip_name(workload_set: str, line_type: str, pool_index: int, zone_index: int) -> str:
    return f"{workload_set}-eip-{line_type.lower()}-{pool_index}-z{zone_index}"


def network_object_name(replica_name: str, line_type: str) -> str:
    return f"{replica_name}-{line_type.lower()}"


@dataclass
class PrewarmResult:
    """Outcome of one prewarming pass for a workload set."""

    workload_set: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    expected_count: int = 0
    existing: dict[str, int] = field(default_factory=dict)
    created_load_balancers: list[str] = field(default_factory=list)
    created_elastic_ips: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    objects_created: int = 0
    objects_skipped: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Check if the pass completed without errors."""
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "workload_set": self.workload_set,
            "timestamp": self.timestamp.isoformat(),
            "expected_count": self.expected_count,
            "existing": dict(self.existing),
            "created_load_balancers": list(self.created_load_balancers),
            "created_elastic_ips": list(self.created_elastic_ips),
            "pending": list(self.pending),
            "objects_created": self.objects_created,
            "objects_skipped": self.objects_skipped,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "success": self.success,
        }


class PrewarmingController:
    """Maintain the standing pool of load balancers per workload set."""

    def __init__(self, store: ObjectStore, adapter: NetworkAdapter) -> None:
        """Initialize PrewarmingController.

        Args:
            store: Cluster object store
            adapter: Vendor adapter building pool resources and objects
        """
        self._store = store
        self._adapter = adapter
        self._max_index: dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # High-water marks
    # ------------------------------------------------------------------

    def observe(self, replica: Replica) -> int:
        """Raise the workload set's high-water mark to the replica's index.

        Returns:
            The high-water mark after the update
        """
        key = replica.workload_set_key
        index = replica.index
        with self._lock:
            current = self._max_index.get(key, 0)
            if index > current:
                logger.info(f"High-water mark for {key}: {current} -> {index}")
                self._max_index[key] = index
                return index
            return current

    def seed(self, workload_set: WorkloadSet) -> None:
        """Initialize the high-water mark from the workload set's replica count."""
        with self._lock:
            current = self._max_index.get(workload_set.key, 0)
            self._max_index[workload_set.key] = max(current, workload_set.replicas)

    def max_index_seen(self, workload_set_key: str) -> int:
        with self._lock:
            return self._max_index.get(workload_set_key, 0)

    def expected_count(self, namespace: str, workload_set: str, conf: NetworkConfig) -> int:
        """Expected pool size for a workload set under ``conf``."""
        return expected_count(
            self.max_index_seen(object_key(namespace, workload_set)),
            conf.pods_per_resource(),
            conf.reserve_num,
        )

    # ------------------------------------------------------------------
    # Pool queries
    # ------------------------------------------------------------------

    def pool_load_balancers(self, namespace: str, workload_set: str, line_type: str) -> dict[int, PoolResource]:
        """Existing pool load balancers keyed by pool index."""
        resources = self._store.list_pool_resources(
            PoolResourceKind.LOAD_BALANCER,
            namespace,
            {POOL_WORKLOAD_SET_LABEL: workload_set, POOL_LINE_TYPE_LABEL: line_type},
        )
        pool: dict[int, PoolResource] = {}
        for resource in resources:
            try:
                pool[int(resource.labels.get(POOL_INDEX_LABEL, ""))] = resource
            except ValueError:
                logger.warning(f"Pool load balancer {resource.key} has no valid index label")
        return pool

    def pool_load_balancer(
        self, namespace: str, workload_set: str, line_type: str, pool_index: int
    ) -> PoolResource | None:
        return self._store.get_pool_resource(
            PoolResourceKind.LOAD_BALANCER, namespace, load_balancer_name(workload_set, line_type, pool_index)
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _owner(self, ws: WorkloadSet, conf: NetworkConfig):  # type: ignore[no-untyped-def]
        return None if conf.retain_on_delete else ws.owner_reference()

    def ensure_entry(
        self,
        ws: WorkloadSet,
        line_type: str,
        pool_index: int,
        conf: NetworkConfig,
        result: PrewarmResult | None = None,
    ) -> PoolResource | None:
        """Create the elastic IPs and load balancer of one pool entry if missing.

        Args:
            ws: Owning workload set
            line_type: Line type of the entry
            pool_index: Index of the entry within its line type
            conf: Parsed network configuration
            result: Result collecting created and pending names

        Returns:
            The load balancer, or ``None`` while its elastic IPs are not ready
        """
        if conf.zone_maps is None:
            raise ConfigurationError("Pooled load balancers need ZoneMaps", field="ZoneMaps")
        result = result or PrewarmResult(workload_set=ws.key)
        lb_name = load_balancer_name(ws.name, line_type, pool_index)

        existing = self._store.get_pool_resource(PoolResourceKind.LOAD_BALANCER, ws.namespace, lb_name)
        if existing is not None:
            return existing

        owner = self._owner(ws, conf)
        allocation_ids: list[str] = []
        for zone_index in range(len(conf.zone_maps.zones)):
            eip_name = elastic_ip_name(ws.name, line_type, pool_index, zone_index)
            eip = self._store.get_pool_resource(PoolResourceKind.ELASTIC_IP, ws.namespace, eip_name)
            if eip is None:
                eip = self._adapter.build_elastic_ip(
                    ws.namespace, eip_name, ws.name, line_type, pool_index, zone_index, owner
                )
                try:
                    eip = self._store.create_pool_resource(eip)
                    result.created_elastic_ips.append(eip_name)
                    logger.info(f"Created elastic IP {ws.namespace}/{eip_name} ({line_type})")
                except AlreadyExistsError:
                    continue
            if eip.resource_id:
                allocation_ids.append(eip.resource_id)

        if len(allocation_ids) < len(conf.zone_maps.zones):
            logger.info(f"Load balancer {ws.namespace}/{lb_name} waits for elastic IP allocation ids")
            result.pending.append(lb_name)
            return None

        resource = self._adapter.build_load_balancer(
            ws.namespace, lb_name, ws.name, line_type, pool_index, conf.zone_maps, allocation_ids, owner
        )
        try:
            created = self._store.create_pool_resource(resource)
        except AlreadyExistsError:
            return self._store.get_pool_resource(PoolResourceKind.LOAD_BALANCER, ws.namespace, lb_name)
        result.created_load_balancers.append(lb_name)
        logger.info(f"Created load balancer {ws.namespace}/{lb_name} with elastic IPs {allocation_ids}")
        return created

    def binding_for(
        self, ws: WorkloadSet, line_type: str, global_index: int, lb: PoolResource, conf: NetworkConfig
    ) -> Binding:
        """Binding of the replica slot ``global_index`` on a ready pool load balancer."""
        slot = global_index % conf.pods_per_resource()
        replica_name = f"{ws.name}-{global_index}"
        return Binding(
            owner_key=object_key(ws.namespace, replica_name),
            load_balancer_id=lb.resource_id,
            ports=conf.slot_ports(slot),
            owner_reference=ws.owner_reference(),
            line_type=line_type,
            labels={OWNER_WORKLOAD_SET_KEY: ws.name},
        )

    def _prewarm_objects(
        self, ws: WorkloadSet, line_type: str, pool_index: int, lb: PoolResource, conf: NetworkConfig, result: PrewarmResult
    ) -> None:
        pods_per = conf.pods_per_resource()
        for slot in range(pods_per):
            global_index = pool_index * pods_per + slot
            replica_name = f"{ws.name}-{global_index}"
            name = network_object_name(replica_name, line_type)
            if self._store.get_network_object(ws.namespace, name) is not None:
                result.objects_skipped += 1
                continue
            binding = self.binding_for(ws, line_type, global_index, lb, conf)
            obj = self._adapter.build_network_object(
                ws.namespace, name, replica_name, binding, conf, NetworkType.POOLED_LB
            )
            try:
                self._store.create_network_object(obj)
                result.objects_created += 1
            except AlreadyExistsError:
                result.objects_skipped += 1
            except ApiCallError as e:
                result.errors.append(f"{name}: {e}")
                logger.error(f"Failed to prewarm network object {ws.namespace}/{name}: {e}")

    def reconcile(self, namespace: str, workload_set: str, conf: NetworkConfig) -> PrewarmResult:
        """Run one prewarming pass for a workload set.

        Per-item failures are collected in ``PrewarmResult.errors`` and the
        pass moves on, so the next pass retries them.

        Args:
            namespace: Workload-set namespace
            workload_set: Workload-set name
            conf: Parsed network configuration

        Returns:
            PrewarmResult describing the pass
        """
        result = PrewarmResult(workload_set=object_key(namespace, workload_set))
        ws = self._store.get_workload_set(namespace, workload_set)
        if ws is None:
            result.errors.append(f"workload set {result.workload_set} not found")
            return result
        if ws.deleting:
            logger.info(f"Workload set {ws.key} is deleting, skipping prewarm")
            result.skipped = True
            return result

        result.expected_count = self.expected_count(namespace, workload_set, conf)
        for line_type in conf.line_types:
            pool = self.pool_load_balancers(namespace, workload_set, line_type)
            result.existing[line_type] = len(pool)
            logger.info(
                f"Prewarm {ws.key} ({line_type}): existing={len(pool)} expected={result.expected_count}"
            )

            for pool_index in range(result.expected_count):
                if pool_index in pool:
                    continue
                try:
                    created = self.ensure_entry(ws, line_type, pool_index, conf, result)
                except ApiCallError as e:
                    result.errors.append(f"{load_balancer_name(workload_set, line_type, pool_index)}: {e}")
                    logger.error(f"Failed to ensure pool entry {pool_index} of {ws.key}: {e}")
                    continue
                if created is not None:
                    pool[pool_index] = created

            for pool_index, lb in sorted(pool.items()):
                if not lb.resource_id:
                    logger.debug(f"Load balancer {lb.key} has not reported its id yet")
                    continue
                self._prewarm_objects(ws, line_type, pool_index, lb, conf, result)

        logger.info(
            f"Prewarm {ws.key} done: lbs+{len(result.created_load_balancers)} "
            f"eips+{len(result.created_elastic_ips)} objects+{result.objects_created} pending={result.pending}"
        )
        return result

    # ------------------------------------------------------------------
    # Cascading deletion
    # ------------------------------------------------------------------

    def attach_replica_finalizer(self, replica: Replica, conf: NetworkConfig) -> Replica:
        """Add the replica finalizer when the pool is not retained."""
        if conf.retain_on_delete or REPLICA_FINALIZER in replica.finalizers:
            return replica
        replica.finalizers.append(REPLICA_FINALIZER)
        logger.info(f"Added finalizer {REPLICA_FINALIZER} to {replica.key}")
        return replica

    def release_replica(self, replica: Replica, conf: NetworkConfig) -> None:
        """Run the replica's part of cascading deletion.

        Removes the replica finalizer right away when the workload set is
        not deleting. Otherwise waits until the replica's network objects
        are gone, removes the finalizer, and releases the pool load
        balancers once no network object of the workload set remains.

        Raises:
            DependencyNotReadyError: While the replica's network objects still exist
        """
        if conf.retain_on_delete or REPLICA_FINALIZER not in replica.finalizers:
            return

        ws = self._store.get_workload_set(replica.namespace, replica.workload_set_name)
        ws_deleting = ws is None or ws.deleting

        if ws_deleting:
            for line_type in conf.line_types:
                name = network_object_name(replica.name, line_type)
                if self._store.get_network_object(replica.namespace, name) is not None:
                    raise DependencyNotReadyError(
                        f"Waiting for network object {replica.namespace}/{name} to be deleted",
                        resource=object_key(replica.namespace, name),
                    )

        replica.finalizers = [f for f in replica.finalizers if f != REPLICA_FINALIZER]
        self._store.update_replica(replica)
        logger.info(f"Removed finalizer {REPLICA_FINALIZER} from {replica.key}")

        if not ws_deleting:
            return

        remaining = self._store.list_network_objects(
            replica.namespace, {OWNER_WORKLOAD_SET_KEY: replica.workload_set_name}
        )
        if remaining:
            logger.info(
                f"{len(remaining)} network objects of {replica.workload_set_key} remain, "
                "pool finalizers stay for now"
            )
            return
        self.release_pool_finalizers(replica.namespace, replica.workload_set_name, conf)

    def release_pool_finalizers(self, namespace: str, workload_set: str, conf: NetworkConfig) -> int:
        """Remove the pool finalizer from deleting load balancers of a workload set.

        Returns:
            Number of load balancers released
        """
        released = 0
        for line_type in conf.line_types:
            for lb in self.pool_load_balancers(namespace, workload_set, line_type).values():
                if not lb.deleting or POOL_FINALIZER not in lb.finalizers:
                    continue
                lb.finalizers = [f for f in lb.finalizers if f != POOL_FINALIZER]
                try:
                    self._store.update_pool_resource(lb)
                except ApiCallError as e:
                    logger.error(f"Failed to remove finalizer from {lb.key}: {e}")
                    continue
                released += 1
                logger.info(f"Removed finalizer {POOL_FINALIZER} from {lb.key}")
        return released
