"""Cluster object store interface and in-memory implementation.

The engine reads and writes replicas, workload sets, network objects and
pool resources only through ``ObjectStore``. Writes carry the
``resource_version`` read earlier; a stale version raises
``ConflictError`` and the caller re-reads before retrying.
"""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, TypeVar

from lbnet.constants import PoolResourceKind
from lbnet.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from lbnet.logging import get_logger
from lbnet.types import NetworkObject, PoolResource, Replica, WorkloadSet

logger = get_logger("store")

T = TypeVar("T", Replica, WorkloadSet, NetworkObject, PoolResource)


def matches_labels(labels: dict[str, str], selector: dict[str, str] | None) -> bool:
    """Check whether ``labels`` satisfy an equality selector."""
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


class ObjectStore(ABC):
    """Read/write access to the cluster objects the engine works with."""

    # --- Replicas ---

    @abstractmethod
    def get_replica(self, namespace: str, name: str) -> Replica | None: ...

    @abstractmethod
    def list_replicas(self, namespace: str | None = None, labels: dict[str, str] | None = None) -> list[Replica]: ...

    @abstractmethod
    def update_replica(self, replica: Replica) -> Replica: ...

    # --- Workload sets ---

    @abstractmethod
    def get_workload_set(self, namespace: str, name: str) -> WorkloadSet | None: ...

    @abstractmethod
    def list_workload_sets(self, namespace: str | None = None) -> list[WorkloadSet]: ...

    # --- Network objects ---

    @abstractmethod
    def get_network_object(self, namespace: str, name: str) -> NetworkObject | None: ...

    @abstractmethod
    def list_network_objects(
        self, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[NetworkObject]: ...

    @abstractmethod
    def create_network_object(self, obj: NetworkObject) -> NetworkObject: ...

    @abstractmethod
    def update_network_object(self, obj: NetworkObject) -> NetworkObject: ...

    @abstractmethod
    def delete_network_object(self, namespace: str, name: str) -> None: ...

    # --- Pool resources ---

    @abstractmethod
    def get_pool_resource(self, kind: PoolResourceKind, namespace: str, name: str) -> PoolResource | None: ...

    @abstractmethod
    def list_pool_resources(
        self, kind: PoolResourceKind, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[PoolResource]: ...

    @abstractmethod
    def create_pool_resource(self, resource: PoolResource) -> PoolResource: ...

    @abstractmethod
    def update_pool_resource(self, resource: PoolResource) -> PoolResource: ...

    @abstractmethod
    def delete_pool_resource(self, kind: PoolResourceKind, namespace: str, name: str) -> None: ...


class InMemoryObjectStore(ObjectStore):
    """Thread-safe in-memory store with cluster-like write semantics.

    - every write bumps a global ``resource_version``; updates carrying an
      older version raise ``ConflictError``
    - deleting an object that still has finalizers only marks it
      ``deleting``; it disappears once an update removes the last finalizer
    - ``collect_garbage`` deletes objects whose owner is gone or deleting
    Used by tests and dry runs.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._replicas: dict[tuple[str, str], Replica] = {}
        self._workload_sets: dict[tuple[str, str], WorkloadSet] = {}
        self._network_objects: dict[tuple[str, str], NetworkObject] = {}
        self._pool: dict[PoolResourceKind, dict[tuple[str, str], PoolResource]] = {
            kind: {} for kind in PoolResourceKind
        }

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _get(self, table: dict[tuple[str, str], T], namespace: str, name: str) -> T | None:
        with self._lock:
            obj = table.get((namespace, name))
            return copy.deepcopy(obj) if obj is not None else None

    def _list(
        self, table: dict[tuple[str, str], T], namespace: str | None, labels: dict[str, str] | None
    ) -> list[T]:
        with self._lock:
            items = [
                copy.deepcopy(obj)
                for (ns, _), obj in sorted(table.items())
                if (namespace is None or ns == namespace) and matches_labels(obj.labels, labels)
            ]
        return items

    def _put(self, table: dict[tuple[str, str], T], obj: T) -> T:
        """Insert or replace without version checks (seeding and vendor simulation)."""
        with self._lock:
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            table[(obj.namespace, obj.name)] = stored
            return copy.deepcopy(stored)

    def _create(self, table: dict[tuple[str, str], T], obj: T, kind: str) -> T:
        with self._lock:
            if (obj.namespace, obj.name) in table:
                raise AlreadyExistsError(f"{kind} already exists", kind=kind, name=obj.key, status=409)
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            stored.deleting = False
            table[(obj.namespace, obj.name)] = stored
            return copy.deepcopy(stored)

    def _update(self, table: dict[tuple[str, str], T], obj: T, kind: str) -> T:
        with self._lock:
            current = table.get((obj.namespace, obj.name))
            if current is None:
                raise NotFoundError(f"{kind} not found", kind=kind, name=obj.key, status=404)
            if obj.resource_version and obj.resource_version != current.resource_version:
                raise ConflictError(
                    f"{kind} was modified concurrently (have {obj.resource_version}, "
                    f"current {current.resource_version})",
                    kind=kind,
                    name=obj.key,
                    status=409,
                )
            stored = copy.deepcopy(obj)
            stored.deleting = current.deleting
            if stored.deleting and not stored.finalizers:
                del table[(obj.namespace, obj.name)]
                logger.debug(f"{kind} {obj.key} removed after last finalizer")
                stored.resource_version = self._next_version()
                return copy.deepcopy(stored)
            stored.resource_version = self._next_version()
            table[(obj.namespace, obj.name)] = stored
            return copy.deepcopy(stored)

    def _delete(self, table: dict[tuple[str, str], Any], namespace: str, name: str, kind: str) -> None:
        with self._lock:
            current = table.get((namespace, name))
            if current is None:
                raise NotFoundError(f"{kind} not found", kind=kind, name=f"{namespace}/{name}", status=404)
            if current.finalizers:
                if not current.deleting:
                    current.deleting = True
                    current.resource_version = self._next_version()
                return
            del table[(namespace, name)]

    # ------------------------------------------------------------------
    # Replicas
    # ------------------------------------------------------------------

    def get_replica(self, namespace: str, name: str) -> Replica | None:
        return self._get(self._replicas, namespace, name)

    def list_replicas(self, namespace: str | None = None, labels: dict[str, str] | None = None) -> list[Replica]:
        return self._list(self._replicas, namespace, labels)

    def update_replica(self, replica: Replica) -> Replica:
        return self._update(self._replicas, replica, "Replica")

    def put_replica(self, replica: Replica) -> Replica:
        """Seed or overwrite a replica, assigning a uid when missing."""
        if not replica.uid:
            replica = copy.deepcopy(replica)
            replica.uid = str(uuid.uuid4())
        return self._put(self._replicas, replica)

    def delete_replica(self, namespace: str, name: str) -> None:
        self._delete(self._replicas, namespace, name, "Replica")

    # ------------------------------------------------------------------
    # Workload sets
    # ------------------------------------------------------------------

    def get_workload_set(self, namespace: str, name: str) -> WorkloadSet | None:
        return self._get(self._workload_sets, namespace, name)

    def list_workload_sets(self, namespace: str | None = None) -> list[WorkloadSet]:
        return self._list(self._workload_sets, namespace, None)

    def put_workload_set(self, workload_set: WorkloadSet) -> WorkloadSet:
        """Seed or overwrite a workload set, assigning a uid when missing."""
        if not workload_set.uid:
            workload_set = copy.deepcopy(workload_set)
            workload_set.uid = str(uuid.uuid4())
        return self._put(self._workload_sets, workload_set)

    def delete_workload_set(self, namespace: str, name: str) -> None:
        self._delete(self._workload_sets, namespace, name, "WorkloadSet")

    # ------------------------------------------------------------------
    # Network objects
    # ------------------------------------------------------------------

    def get_network_object(self, namespace: str, name: str) -> NetworkObject | None:
        return self._get(self._network_objects, namespace, name)

    def list_network_objects(
        self, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[NetworkObject]:
        return self._list(self._network_objects, namespace, labels)

    def create_network_object(self, obj: NetworkObject) -> NetworkObject:
        return self._create(self._network_objects, obj, "NetworkObject")

    def update_network_object(self, obj: NetworkObject) -> NetworkObject:
        return self._update(self._network_objects, obj, "NetworkObject")

    def delete_network_object(self, namespace: str, name: str) -> None:
        self._delete(self._network_objects, namespace, name, "NetworkObject")

    def put_network_object(self, obj: NetworkObject) -> NetworkObject:
        """Seed or overwrite a network object (e.g. vendor-reported ingress)."""
        return self._put(self._network_objects, obj)

    # ------------------------------------------------------------------
    # Pool resources
    # ------------------------------------------------------------------

    def get_pool_resource(self, kind: PoolResourceKind, namespace: str, name: str) -> PoolResource | None:
        return self._get(self._pool[kind], namespace, name)

    def list_pool_resources(
        self, kind: PoolResourceKind, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[PoolResource]:
        return self._list(self._pool[kind], namespace, labels)

    def create_pool_resource(self, resource: PoolResource) -> PoolResource:
        return self._create(self._pool[resource.kind], resource, resource.kind.value)

    def update_pool_resource(self, resource: PoolResource) -> PoolResource:
        return self._update(self._pool[resource.kind], resource, resource.kind.value)

    def delete_pool_resource(self, kind: PoolResourceKind, namespace: str, name: str) -> None:
        self._delete(self._pool[kind], namespace, name, kind.value)

    def put_pool_resource(self, resource: PoolResource) -> PoolResource:
        """Seed or overwrite a pool resource (e.g. vendor-reported id)."""
        return self._put(self._pool[resource.kind], resource)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def collect_garbage(self) -> int:
        """Delete dependents whose owner is gone or being deleted.

        Returns:
            Number of delete calls issued
        """
        with self._lock:
            live_uids = {r.uid for r in self._replicas.values() if not r.deleting}
            live_uids |= {w.uid for w in self._workload_sets.values() if not w.deleting}

            doomed: list[tuple[dict[tuple[str, str], Any], tuple[str, str], str]] = []
            for key, obj in self._network_objects.items():
                if obj.owner_reference and obj.owner_reference.uid not in live_uids and not obj.deleting:
                    doomed.append((self._network_objects, key, "NetworkObject"))
            for kind, table in self._pool.items():
                for key, res in table.items():
                    if res.owner_reference and res.owner_reference.uid not in live_uids and not res.deleting:
                        doomed.append((table, key, kind.value))

            for table, (namespace, name), kind in doomed:
                self._delete(table, namespace, name, kind)
        if doomed:
            logger.debug(f"Garbage collected {len(doomed)} dependents")
        return len(doomed)
