"""Thread-safe port allocator for shared load balancers.

Owns one ``PortBitmap`` per load balancer and the registry of
``AllocationRecord`` entries keyed by owner. Both live behind a single
``threading.RLock`` so the bitmaps and the registry never diverge, and
no caller ever touches the raw maps.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from lbnet.config import AllocatorConfig
from lbnet.exceptions import ConsistencyError, DependencyNotReadyError, PortsExhaustedError
from lbnet.logging import get_logger
from lbnet.port_bitmap import PortBitmap
from lbnet.selection import FirstFitPolicy, SelectionPolicy
from lbnet.types import AllocationRecord

logger = get_logger("allocator")


@dataclass
class AllocatorSnapshot:
    """Read-only copy of allocator state for monitoring."""

    min_port: int
    max_port: int
    block_ports: list[int]
    bitmaps: dict[str, PortBitmap] = field(default_factory=dict)
    records: dict[str, AllocationRecord] = field(default_factory=dict)
    ready: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "min_port": self.min_port,
            "max_port": self.max_port,
            "block_ports": list(self.block_ports),
            "ready": self.ready,
            "load_balancers": {
                lb_id: {"free": bitmap.free_count(), "booked": bitmap.booked_ports()}
                for lb_id, bitmap in sorted(self.bitmaps.items())
            },
            "records": [r.to_dict() for _, r in sorted(self.records.items())],
        }


class PortAllocator:
    """Single source of truth for shared load-balancer ports. Thread-safe.

    Mutating calls block until ``install`` has run once (the cold-start
    reconstruction), so no allocation can race the rebuild.
    """

    def __init__(
        self,
        min_port: int,
        max_port: int,
        block_ports: Iterable[int] = (),
        ready: bool = False,
        ready_timeout: float | None = None,
    ) -> None:
        if min_port >= max_port:
            raise ValueError(f"Empty port range [{min_port}, {max_port})")
        self.min_port = min_port
        self.max_port = max_port
        self.block_ports = sorted({p for p in block_ports if min_port <= p < max_port})
        self._ready_timeout = ready_timeout
        self._bitmaps: dict[str, PortBitmap] = {}
        self._records: dict[str, AllocationRecord] = {}
        self._lock = threading.RLock()
        self._ready = threading.Event()
        if ready:
            self._ready.set()

    @classmethod
    def from_config(cls, config: AllocatorConfig, **kwargs: Any) -> PortAllocator:
        """Create an allocator for the configured range.

        Args:
            config: Allocator configuration section
            **kwargs: Extra constructor arguments

        Returns:
            PortAllocator instance
        """
        return cls(config.min_port, config.max_port, config.block_ports, **kwargs)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until state has been installed.

        Args:
            timeout: Seconds to wait, ``None`` to wait forever

        Returns:
            True if the allocator is ready
        """
        return self._ready.wait(timeout)

    def _require_ready(self) -> None:
        if not self._ready.wait(self._ready_timeout):
            raise DependencyNotReadyError("Allocator state has not been reconstructed yet", resource="allocator")

    def new_bitmap(self) -> PortBitmap:
        """Return an empty bitmap for this allocator's range."""
        return PortBitmap(self.min_port, self.max_port, self.block_ports)

    def install(self, bitmaps: dict[str, PortBitmap], records: dict[str, AllocationRecord]) -> None:
        """Atomically replace all state and mark the allocator ready.

        Args:
            bitmaps: Bitmap per load-balancer id
            records: Allocation records per owner key
        """
        with self._lock:
            self._bitmaps = {lb_id: bitmap.copy() for lb_id, bitmap in bitmaps.items()}
            self._records = {key: replace(r, ports=list(r.ports)) for key, r in records.items()}
            self._ready.set()
        logger.info(f"Installed allocator state: {len(bitmaps)} load balancers, {len(records)} records")

    # ------------------------------------------------------------------
    # Bitmap operations
    # ------------------------------------------------------------------

    def _bitmap(self, load_balancer_id: str) -> PortBitmap:
        bitmap = self._bitmaps.get(load_balancer_id)
        if bitmap is None:
            bitmap = self.new_bitmap()
            self._bitmaps[load_balancer_id] = bitmap
        return bitmap

    def _capacity(self, load_balancer_id: str) -> int:
        bitmap = self._bitmaps.get(load_balancer_id)
        if bitmap is None:
            # Uninitialized load balancers are fully free
            return (self.max_port - self.min_port) - len(self.block_ports)
        return bitmap.free_count()

    def allocate(self, load_balancer_id: str, count: int) -> list[int]:
        """Book the lowest ``count`` free ports of one load balancer.

        Args:
            load_balancer_id: Load balancer to allocate on
            count: Number of ports

        Returns:
            Booked ports in ascending order

        Raises:
            PortsExhaustedError: If not enough ports are free; nothing is booked
        """
        self._require_ready()
        with self._lock:
            ports = self._bitmap(load_balancer_id).take(count)
        logger.debug(f"Allocated ports {ports} on {load_balancer_id}")
        return ports

    def deallocate(self, load_balancer_id: str, ports: Iterable[int]) -> None:
        """Free ports of one load balancer. Blocked ports stay booked.

        Args:
            load_balancer_id: Load balancer the ports belong to
            ports: Ports to free
        """
        self._require_ready()
        ports = list(ports)
        with self._lock:
            bitmap = self._bitmaps.get(load_balancer_id)
            if bitmap is None:
                return
            bitmap.clear(ports)
        logger.debug(f"Deallocated ports {ports} on {load_balancer_id}")

    def free_count(self, load_balancer_id: str) -> int:
        """Free, non-blocked port count of a load balancer."""
        with self._lock:
            return self._capacity(load_balancer_id)

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------

    def lookup(self, owner_key: str) -> AllocationRecord | None:
        """Return a copy of the owner's record, or ``None``."""
        with self._lock:
            record = self._records.get(owner_key)
            return replace(record, ports=list(record.ports)) if record else None

    def assign(
        self,
        owner_key: str,
        candidates: Sequence[str],
        count: int,
        policy: SelectionPolicy | None = None,
        workload_set: str | None = None,
    ) -> AllocationRecord:
        """Return the owner's record, allocating one if it has none.

        Selection and allocation run under the allocator lock, so the
        capacity seen by the policy is the capacity allocated from.

        Args:
            owner_key: ``namespace/name`` of the owner
            candidates: Ordered candidate load-balancer ids
            count: Ports needed
            policy: Selection policy, first-fit when omitted
            workload_set: Workload-set key for fixed bindings

        Returns:
            The owner's allocation record

        Raises:
            PortsExhaustedError: If no candidate can satisfy the request
        """
        self._require_ready()
        policy = policy or FirstFitPolicy()
        with self._lock:
            existing = self._records.get(owner_key)
            if existing is not None:
                if existing.workload_set != workload_set:
                    logger.info(f"{owner_key} workload set tag {existing.workload_set} -> {workload_set}")
                    existing.workload_set = workload_set
                return replace(existing, ports=list(existing.ports))

            lb_id = policy.select(self._capacity, candidates, count)
            try:
                ports = self._bitmap(lb_id).take(count)
            except PortsExhaustedError as e:
                raise PortsExhaustedError(
                    f"Selected load balancer {lb_id} could not supply {count} ports",
                    candidates=list(candidates),
                    requested=count,
                ) from e

            record = AllocationRecord(
                owner_key=owner_key,
                load_balancer_id=lb_id,
                ports=ports,
                workload_set=workload_set,
            )
            self._records[owner_key] = record
        logger.info(f"{owner_key} allocated {lb_id} ports {ports} ({policy.name})")
        return replace(record, ports=list(record.ports))

    def reassign(
        self,
        owner_key: str,
        candidates: Sequence[str],
        count: int,
        policy: SelectionPolicy | None = None,
        workload_set: str | None = None,
    ) -> AllocationRecord:
        """Replace the owner's record with a fresh allocation of ``count`` ports.

        The old ports are free while the new ones are selected, so a replica
        may regrow in place. If no candidate can supply ``count`` ports the
        old record and its bookings are restored before the error propagates.

        Args:
            owner_key: ``namespace/name`` of the owner
            candidates: Ordered candidate load-balancer ids
            count: Ports needed
            policy: Selection policy, first-fit when omitted
            workload_set: Workload-set key for fixed bindings

        Returns:
            The owner's new allocation record

        Raises:
            PortsExhaustedError: If no candidate can satisfy the request
        """
        self._require_ready()
        with self._lock:
            old = self._records.pop(owner_key, None)
            if old is not None:
                self._bitmap(old.load_balancer_id).clear(old.ports)
            try:
                return self.assign(owner_key, candidates, count, policy=policy, workload_set=workload_set)
            except PortsExhaustedError:
                if old is not None:
                    self._bitmap(old.load_balancer_id).mark(old.ports)
                    self._records[owner_key] = old
                    logger.warning(f"{owner_key} cannot grow to {count} ports, keeping {old.ports}")
                raise

    def rebuild(self, build: Callable[[], tuple[dict[str, PortBitmap], dict[str, AllocationRecord]]]) -> None:
        """Install the state returned by ``build`` while holding the lock.

        No assign or release can land between the listing done by ``build``
        and the install, so nothing booked meanwhile is lost.

        Args:
            build: Callable returning ``(bitmaps, records)``
        """
        with self._lock:
            bitmaps, records = build()
            self.install(bitmaps, records)

    def release(self, owner_key: str) -> AllocationRecord | None:
        """Free the owner's ports and drop its record.

        Args:
            owner_key: Owner to release

        Returns:
            The released record, or ``None`` if the owner held nothing
        """
        self._require_ready()
        with self._lock:
            record = self._records.pop(owner_key, None)
            if record is None:
                return None
            bitmap = self._bitmaps.get(record.load_balancer_id)
            if bitmap is not None:
                bitmap.clear(record.ports)
        logger.info(f"{owner_key} released {record.load_balancer_id} ports {record.ports}")
        return record

    def release_workload_set(self, workload_set: str) -> list[AllocationRecord]:
        """Release every fixed record bound to a workload set.

        Args:
            workload_set: ``namespace/name`` of the workload set

        Returns:
            Released records
        """
        self._require_ready()
        with self._lock:
            keys = [key for key, r in self._records.items() if r.workload_set == workload_set]
            released = [r for r in (self.release(key) for key in keys) if r is not None]
        if released:
            logger.info(f"Released {len(released)} fixed allocations of {workload_set}")
        return released

    def release_where(self, predicate: Callable[[AllocationRecord], bool]) -> list[AllocationRecord]:
        """Release every record the predicate selects.

        The predicate runs under the allocator lock, so a record cannot be
        handed out again between the check and the release.

        Args:
            predicate: Called with a copy of each record

        Returns:
            Released records
        """
        self._require_ready()
        with self._lock:
            keys = [key for key, r in self._records.items() if predicate(replace(r, ports=list(r.ports)))]
            return [r for r in (self.release(key) for key in keys) if r is not None]

    def records(self) -> list[AllocationRecord]:
        """Return copies of all records."""
        with self._lock:
            return [replace(r, ports=list(r.ports)) for r in self._records.values()]

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def snapshot(self) -> AllocatorSnapshot:
        """Return a consistent copy of the allocator state."""
        with self._lock:
            return AllocatorSnapshot(
                min_port=self.min_port,
                max_port=self.max_port,
                block_ports=list(self.block_ports),
                bitmaps={lb_id: b.copy() for lb_id, b in self._bitmaps.items()},
                records={key: replace(r, ports=list(r.ports)) for key, r in self._records.items()},
                ready=self.ready,
            )

    def verify_consistency(self) -> None:
        """Check that bitmaps and records agree.

        Raises:
            ConsistencyError: If a port is held twice, a record points at an
                unknown load balancer, or booked ports lack a record
        """
        with self._lock:
            held: dict[str, dict[int, str]] = {}
            for key, record in self._records.items():
                if record.load_balancer_id not in self._bitmaps:
                    raise ConsistencyError(
                        f"Record {key} references unknown load balancer",
                        {"load_balancer_id": record.load_balancer_id},
                    )
                owners = held.setdefault(record.load_balancer_id, {})
                for port in record.ports:
                    if port in owners:
                        raise ConsistencyError(
                            f"Port {port} on {record.load_balancer_id} held twice",
                            {"owners": [owners[port], key]},
                        )
                    owners[port] = key

            for lb_id, bitmap in self._bitmaps.items():
                booked = set(bitmap.booked_ports())
                recorded = set(held.get(lb_id, {}))
                if booked != recorded:
                    raise ConsistencyError(
                        f"Bitmap and registry disagree for {lb_id}",
                        {
                            "booked_without_record": sorted(booked - recorded),
                            "recorded_not_booked": sorted(recorded - booked),
                        },
                    )

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, owner_key: object) -> bool:
        with self._lock:
            return owner_key in self._records

    def __repr__(self) -> str:
        with self._lock:
            count = len(self._records)
            lbs = len(self._bitmaps)
        return f"<PortAllocator [{self.min_port}, {self.max_port}) load_balancers={lbs} records={count}>"
