"""Per-replica network readiness state machine.

A replica moves from ``Waiting`` (no status yet) to ``NotReady`` on its
first pass, and to ``Ready`` once every network object its binder names
exists, carries the current configuration, is reachable and reports an
ingress address. The disabled flag is orthogonal: toggling it flips the
network object between load-balancer and internal-only without giving
up the binding.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

from lbnet.adapters.base import NetworkAdapter
from lbnet.binding import Binder, BindingTarget
from lbnet.constants import CONFIG_HASH_KEY, REPLICA_KIND, NetworkState
from lbnet.exceptions import DependencyNotReadyError
from lbnet.logging import get_logger
from lbnet.network_config import NetworkConfig
from lbnet.network_manager import NetworkManager
from lbnet.types import NetworkAddress, NetworkObject, NetworkPort, NetworkStatus, Replica

logger = get_logger("readiness")


@dataclass
class _Pass:
    """Accumulated outcome of one reconcile pass."""

    ready: bool = True
    drifted: bool = False
    flipped: bool = False
    internal: list[NetworkAddress] = field(default_factory=list)
    external: list[NetworkAddress] = field(default_factory=list)


class NetworkReadinessStateMachine:
    """Drive replicas towards ``Ready`` through a vendor adapter."""

    def __init__(self, adapter: NetworkAdapter) -> None:
        self._adapter = adapter

    @staticmethod
    def _persist(manager: NetworkManager, status: NetworkStatus, state: NetworkState) -> Replica:
        status.current_network_state = state
        return manager.update_network_status(status)

    @staticmethod
    def _foreign_owner(obj: NetworkObject, replica: Replica) -> bool:
        owner = obj.owner_reference
        return (
            owner is not None
            and owner.kind == REPLICA_KIND
            and owner.name == replica.name
            and owner.uid != replica.uid
        )

    def reconcile(self, replica: Replica, conf: NetworkConfig, binder: Binder) -> tuple[Replica, NetworkState]:
        """Run one readiness pass for a replica.

        Args:
            replica: Replica as last read from the store
            conf: Parsed network configuration of the replica
            binder: Binder for the replica's network type

        Returns:
            Tuple of (replica to persist, resulting network state)

        Raises:
            PortsExhaustedError: If a missing object cannot be bound
            ApiCallError: If a network object call fails
        """
        manager = NetworkManager(replica)
        status = manager.get_network_status()
        if status is None:
            logger.info(f"Initializing network status of {replica.key}")
            return self._persist(manager, NetworkStatus(), NetworkState.NOT_READY), NetworkState.NOT_READY

        binder.before_reconcile(replica, conf)
        outcome = _Pass()
        for target in binder.targets(replica, conf):
            self._reconcile_target(replica, conf, binder, target, manager.disabled, outcome)

        if outcome.drifted:
            return self._persist(manager, status, NetworkState.NOT_READY), NetworkState.NOT_READY
        if outcome.flipped:
            # Flipping the disabled flag does not change the persisted state
            return manager.replica, manager.get_network_state()
        if not outcome.ready:
            return self._persist(manager, status, NetworkState.NOT_READY), NetworkState.NOT_READY

        status.internal_addresses = outcome.internal
        status.external_addresses = outcome.external
        if manager.get_network_state() is not NetworkState.READY:
            logger.info(f"Network of {replica.key} is ready")
        return self._persist(manager, status, NetworkState.READY), NetworkState.READY

    def _reconcile_target(
        self,
        replica: Replica,
        conf: NetworkConfig,
        binder: Binder,
        target: BindingTarget,
        disabled: bool,
        outcome: _Pass,
    ) -> None:
        obj = self._adapter.get_network_object_status(replica.namespace, target.name)

        if obj is None:
            outcome.ready = False
            try:
                binding = binder.acquire(replica, conf, target)
            except DependencyNotReadyError as e:
                logger.info(f"{replica.key}: {e.message}")
                return
            obj = self._adapter.build_network_object(
                replica.namespace, target.name, replica.name, binding, conf, binder.network_type, disabled
            )
            self._adapter.create_network_object(obj)
            return

        if self._foreign_owner(obj, replica):
            logger.info(
                f"Waiting for old network object {obj.key} to be deleted, "
                f"owner uid is {obj.owner_reference.uid if obj.owner_reference else ''}, now {replica.uid}"
            )
            outcome.ready = False
            return

        if obj.annotations.get(CONFIG_HASH_KEY) != conf.config_hash():
            outcome.ready = False
            outcome.drifted = True
            try:
                binding = binder.acquire(replica, conf, target)
            except DependencyNotReadyError as e:
                logger.info(f"{replica.key}: {e.message}")
                return
            rebuilt = self._adapter.build_network_object(
                replica.namespace, target.name, replica.name, binding, conf, binder.network_type, disabled
            )
            rebuilt.resource_version = obj.resource_version
            rebuilt.ingress = copy.deepcopy(obj.ingress)
            rebuilt.finalizers = list(obj.finalizers)
            logger.info(f"Configuration of {obj.key} changed, updating")
            self._adapter.update_network_object(rebuilt)
            return

        if disabled == obj.reachable:
            obj.reachable = not disabled
            logger.info(f"{'Disabling' if disabled else 'Enabling'} network object {obj.key}")
            self._adapter.update_network_object(obj)
            outcome.flipped = True
            return

        if not obj.reachable or not obj.ingress:
            logger.info(f"Network object {obj.key} has no ingress yet")
            outcome.ready = False
            return

        exposed = {p.target_port for p in obj.ports}
        missing = [p for p in conf.target_ports if p not in exposed]
        if missing:
            logger.info(f"Network object {obj.key} does not expose {missing} yet")
            outcome.ready = False
            return

        ingress = obj.ingress[0]
        end_point = binder.endpoint(ingress, target)
        for port in obj.ports:
            name = str(port.target_port)
            outcome.internal.append(
                NetworkAddress(ip=replica.pod_ip, ports=[NetworkPort(name, port.protocol, port.target_port)])
            )
            outcome.external.append(
                NetworkAddress(
                    ip=ingress.ip,
                    ports=[NetworkPort(name, port.protocol, port.port)],
                    end_point=end_point,
                )
            )

    def release(self, replica: Replica, conf: NetworkConfig, binder: Binder) -> None:
        """Release or keep the replica's bindings on deletion."""
        binder.on_deleted(replica, conf)
