"""NetworkEngine: lifecycle hooks exposed to the control loop.

Wires the allocator, cold-start reconstruction, prewarming controller,
binders and readiness state machine together, and dispatches each
replica by its network type. Every hook converts domain errors into a
``PluginError`` whose ``retryable`` flag tells the caller whether to
requeue.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from lbnet.adapters import get_adapter
from lbnet.adapters.base import NetworkAdapter
from lbnet.allocator import PortAllocator
from lbnet.binding import Binder, PooledBinder, SharedBinder
from lbnet.cold_start import ColdStartReconstructor, ReconstructionResult
from lbnet.config import LbnetConfig
from lbnet.constants import ErrorType, NetworkState, NetworkType
from lbnet.exceptions import ConfigurationError, ConsistencyError, DependencyNotReadyError, LbnetError, PluginError
from lbnet.logging import get_logger, get_replica_logger
from lbnet.network_config import NetworkConfig, parse_network_config
from lbnet.network_manager import NetworkManager
from lbnet.prewarm import PrewarmingController, PrewarmResult
from lbnet.readiness import NetworkReadinessStateMachine
from lbnet.selection import ScatterPolicy
from lbnet.store import ObjectStore
from lbnet.types import Replica, WorkloadSet

logger = get_logger("engine")

T = TypeVar("T")


class NetworkEngine:
    """Allocation and reconciliation engine for load-balancer networks."""

    def __init__(
        self,
        config: LbnetConfig,
        store: ObjectStore,
        adapter: NetworkAdapter | None = None,
        allocator: PortAllocator | None = None,
    ) -> None:
        """Initialize NetworkEngine.

        Args:
            config: lbnet configuration
            store: Cluster object store
            adapter: Vendor adapter, resolved from ``config.allocator.vendor`` when omitted
            allocator: Port allocator, built from ``config.allocator`` when omitted
        """
        self.config = config
        self.store = store
        self.adapter = adapter or get_adapter(config.allocator.vendor, store)
        self.allocator = allocator or PortAllocator.from_config(config.allocator)
        self.reconstructor = ColdStartReconstructor(store, self.allocator, self.adapter)
        self.prewarm = PrewarmingController(store, self.adapter)
        self.readiness = NetworkReadinessStateMachine(self.adapter)
        self.scatter = ScatterPolicy()
        self._binders: dict[NetworkType, Binder] = {
            NetworkType.SHARED_LB: SharedBinder(self.allocator, store, self.scatter),
            NetworkType.POOLED_LB: PooledBinder(self.prewarm, store),
        }

    @property
    def namespace(self) -> str | None:
        return self.config.kubernetes.namespace

    # ------------------------------------------------------------------
    # Startup and periodic work
    # ------------------------------------------------------------------

    def initialize(self) -> ReconstructionResult:
        """Rebuild allocator state, then prewarm every pooled workload set.

        Returns:
            Result of the cold-start reconstruction
        """
        result = self.reconstructor.reconstruct(self.namespace)
        if not result.clean:
            logger.warning(f"Cold start found {len(result.divergences)} ports claimed twice")
        self.prewarm_all(seed=True)
        return result

    def rebuild(self) -> ReconstructionResult:
        """Discard allocator state and reconstruct it from the cluster."""
        logger.warning("Rebuilding allocator state from network objects")
        return self.reconstructor.reconstruct(self.namespace)

    def verify(self) -> bool:
        """Check allocator consistency, rebuilding when it is broken.

        Returns:
            True if the state was consistent
        """
        try:
            self.allocator.verify_consistency()
        except ConsistencyError as e:
            logger.error(f"Allocator state is inconsistent: {e}")
            self.rebuild()
            return False
        return True

    def pooled_workload_sets(self) -> list[tuple[WorkloadSet, NetworkConfig]]:
        """Workload sets of the pooled network type with a valid configuration."""
        pooled: list[tuple[WorkloadSet, NetworkConfig]] = []
        for ws in self.store.list_workload_sets(self.namespace):
            if ws.network_type != NetworkType.POOLED_LB.value:
                continue
            try:
                conf = parse_network_config(ws.network_conf, NetworkType.POOLED_LB)
            except ConfigurationError as e:
                logger.error(f"Workload set {ws.key} has an invalid network configuration: {e}")
                continue
            pooled.append((ws, conf))
        return pooled

    def prewarm_all(self, seed: bool = False) -> list[PrewarmResult]:
        """Run one prewarming pass for every pooled workload set.

        Args:
            seed: Initialize high-water marks from the replica counts first

        Returns:
            One result per workload set
        """
        results = []
        for ws, conf in self.pooled_workload_sets():
            if seed:
                self.prewarm.seed(ws)
            try:
                results.append(self.prewarm.reconcile(ws.namespace, ws.name, conf))
            except LbnetError as e:
                logger.error(f"Prewarm pass for {ws.key} failed: {e}")
                results.append(PrewarmResult(workload_set=ws.key, errors=[str(e)]))
        return results

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def _resolve(self, replica: Replica) -> tuple[Binder, NetworkConfig]:
        manager = NetworkManager(replica)
        network_type = manager.network_type
        if network_type is None:
            raise PluginError(
                ErrorType.NOT_IMPLEMENTED,
                f"Network type {replica.network_type!r} of {replica.key} is not supported",
                retryable=False,
            )
        return self._binders[network_type], manager.get_network_config()

    def _run(self, hook: str, replica: Replica, fn: Callable[[Binder, NetworkConfig], T]) -> T:
        log = get_replica_logger("engine", replica.key, replica.workload_set_key)
        try:
            binder, conf = self._resolve(replica)
            return fn(binder, conf)
        except PluginError:
            raise
        except ConsistencyError as e:
            log.error(f"{hook}: allocator state is inconsistent: {e}")
            self.rebuild()
            raise PluginError.from_error(e) from e
        except DependencyNotReadyError as e:
            log.info(f"{hook}: {e.message}")
            raise PluginError.from_error(e) from e
        except LbnetError as e:
            log.warning(f"{hook} failed: {e}")
            raise PluginError.from_error(e) from e

    def on_replica_added(self, replica: Replica) -> Replica:
        """Prepare a new replica.

        Returns:
            Replica to persist

        Raises:
            PluginError: On failure
        """
        return self._run("on_replica_added", replica, lambda binder, conf: binder.on_added(replica, conf))

    def on_replica_updated(self, replica: Replica) -> tuple[Replica, NetworkState]:
        """Advance a replica's network readiness.

        Returns:
            Tuple of (replica to persist, resulting state)

        Raises:
            PluginError: On failure
        """
        return self._run(
            "on_replica_updated",
            replica,
            lambda binder, conf: self.readiness.reconcile(replica, conf, binder),
        )

    def on_replica_deleted(self, replica: Replica) -> None:
        """Release or keep what a deleted replica holds.

        Raises:
            PluginError: On failure, retryable while dependents remain
        """
        self._run(
            "on_replica_deleted",
            replica,
            lambda binder, conf: self.readiness.release(replica, conf, binder),
        )
