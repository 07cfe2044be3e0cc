"""Binders: how a replica obtains the load balancer and ports it is exposed on.

``SharedBinder`` books ports on operator-supplied shared load balancers
through the ``PortAllocator``. ``PooledBinder`` maps a replica index onto
a fixed slot of a prewarmed load balancer. The readiness state machine
drives both through the same ``Binder`` interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from lbnet.adapters.base import Binding
from lbnet.allocator import PortAllocator
from lbnet.constants import NetworkType
from lbnet.exceptions import ConfigurationError, DependencyNotReadyError, LbnetError
from lbnet.logging import get_logger
from lbnet.network_config import NetworkConfig
from lbnet.prewarm import PrewarmingController, network_object_name
from lbnet.selection import ScatterPolicy, policy_for
from lbnet.store import ObjectStore
from lbnet.types import Ingress, OwnerReference, Replica

logger = get_logger("binding")


@dataclass(frozen=True)
class BindingTarget:
    """One network object a replica is exposed through."""

    name: str
    line_type: str | None = None


class Binder(ABC):
    """Source of ``Binding`` values for one network type."""

    network_type: NetworkType

    @abstractmethod
    def targets(self, replica: Replica, conf: NetworkConfig) -> list[BindingTarget]:
        """Network objects the replica should be exposed through."""

    @abstractmethod
    def acquire(self, replica: Replica, conf: NetworkConfig, target: BindingTarget) -> Binding:
        """Return the binding of one target, reusing an existing one.

        Raises:
            PortsExhaustedError: If no port can be booked
            DependencyNotReadyError: If the backing load balancer is not ready
        """

    @abstractmethod
    def on_deleted(self, replica: Replica, conf: NetworkConfig) -> None:
        """Release what the replica holds, or keep it when it outlives the replica."""

    def on_added(self, replica: Replica, conf: NetworkConfig) -> Replica:
        """Prepare a newly created replica. Returns the replica to persist."""
        return replica

    def before_reconcile(self, replica: Replica, conf: NetworkConfig) -> None:
        """Hook run before each readiness pass."""
        return None

    def endpoint(self, ingress: Ingress, target: BindingTarget) -> str:
        """Endpoint name reported in the external address."""
        return ingress.hostname


class SharedBinder(Binder):
    """Allocate ports on shared load balancers."""

    network_type = NetworkType.SHARED_LB

    def __init__(self, allocator: PortAllocator, store: ObjectStore, scatter: ScatterPolicy | None = None) -> None:
        """Initialize SharedBinder.

        Args:
            allocator: Port allocator holding all shared bindings
            store: Cluster object store, used to resolve workload sets
            scatter: Scatter policy whose cursor is shared by all replicas
        """
        self._allocator = allocator
        self._store = store
        self._scatter = scatter or ScatterPolicy()

    def targets(self, replica: Replica, conf: NetworkConfig) -> list[BindingTarget]:
        return [BindingTarget(replica.name)]

    def _owner(self, replica: Replica, conf: NetworkConfig) -> OwnerReference:
        if conf.fixed:
            ws = self._store.get_workload_set(replica.namespace, replica.workload_set_name)
            if ws is not None:
                return ws.owner_reference()
        return replica.owner_reference()

    def acquire(self, replica: Replica, conf: NetworkConfig, target: BindingTarget) -> Binding:
        workload_set = replica.workload_set_key if conf.fixed else None
        held = self._allocator.lookup(replica.key)
        book = self._allocator.assign
        if held is not None and len(held.ports) != len(conf.ports):
            logger.info(f"{replica.key} now declares {len(conf.ports)} ports, reallocating {held.ports}")
            book = self._allocator.reassign
        record = book(
            replica.key,
            conf.lb_ids,
            len(conf.ports),
            policy=policy_for(conf.enable_scatter, self._scatter),
            workload_set=workload_set,
        )
        return Binding(
            owner_key=record.owner_key,
            load_balancer_id=record.load_balancer_id,
            ports=list(record.ports),
            owner_reference=self._owner(replica, conf),
            workload_set=record.workload_set,
        )

    def on_deleted(self, replica: Replica, conf: NetworkConfig) -> None:
        if not conf.fixed:
            self._allocator.release(replica.key)
            return

        ws = self._store.get_workload_set(replica.namespace, replica.workload_set_name)
        if ws is not None and not ws.deleting:
            logger.info(f"Keeping fixed allocation of {replica.key}, workload set {ws.key} still exists")
            return
        self._allocator.release_workload_set(replica.workload_set_key)


class PooledBinder(Binder):
    """Bind replicas to fixed slots of prewarmed load balancers."""

    network_type = NetworkType.POOLED_LB

    def __init__(self, prewarm: PrewarmingController, store: ObjectStore) -> None:
        self._prewarm = prewarm
        self._store = store

    def targets(self, replica: Replica, conf: NetworkConfig) -> list[BindingTarget]:
        return [BindingTarget(network_object_name(replica.name, lt), lt) for lt in conf.line_types]

    def acquire(self, replica: Replica, conf: NetworkConfig, target: BindingTarget) -> Binding:
        if replica.index < 0:
            raise ConfigurationError(f"Replica name {replica.name} carries no index")
        line_type = target.line_type or conf.line_types[0]
        ws = self._store.get_workload_set(replica.namespace, replica.workload_set_name)
        if ws is None:
            raise DependencyNotReadyError(
                f"Workload set of {replica.key} not found", resource=replica.workload_set_key
            )

        pool_index = replica.index // conf.pods_per_resource()
        lb = self._prewarm.pool_load_balancer(ws.namespace, ws.name, line_type, pool_index)
        if lb is None or not lb.ready:
            if lb is None and not ws.deleting:
                self._prewarm.ensure_entry(ws, line_type, pool_index, conf)
            raise DependencyNotReadyError(
                f"Pool load balancer {pool_index} ({line_type}) of {ws.key} is not ready",
                resource=f"{ws.key}/{line_type}/{pool_index}",
            )
        return self._prewarm.binding_for(ws, line_type, replica.index, lb, conf)

    def on_added(self, replica: Replica, conf: NetworkConfig) -> Replica:
        self._prewarm.observe(replica)
        return self._prewarm.attach_replica_finalizer(replica, conf)

    def before_reconcile(self, replica: Replica, conf: NetworkConfig) -> None:
        self._prewarm.observe(replica)
        # Catch-up pass in case the periodic pass has not seen this workload set
        try:
            result = self._prewarm.reconcile(replica.namespace, replica.workload_set_name, conf)
        except LbnetError as e:
            logger.warning(f"Prewarm pass for {replica.workload_set_key} failed: {e}")
            return
        if not result.success:
            logger.warning(f"Prewarm pass for {replica.workload_set_key} had errors: {result.errors}")

    def on_deleted(self, replica: Replica, conf: NetworkConfig) -> None:
        self._prewarm.release_replica(replica, conf)

    def endpoint(self, ingress: Ingress, target: BindingTarget) -> str:
        if not ingress.hostname:
            return ""
        return f"{ingress.hostname}/{target.line_type}" if target.line_type else ingress.hostname
