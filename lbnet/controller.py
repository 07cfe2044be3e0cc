"""Reconcile loop feeding replica lifecycle events to the NetworkEngine.

Events sit in a delay queue ordered by due time. Worker threads pop due
events, call the matching engine hook and write the returned replica
back to the store. Retryable failures are requeued with backoff until
``max_retries``; replicas that are not ready yet, or wait on a
dependency, are requeued without a limit. A separate thread runs the
periodic prewarm and consistency pass; another re-lists the store so
changes made after startup reach the queue.
"""

from __future__ import annotations

import copy
import heapq
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from lbnet.config import ControllerConfig
from lbnet.constants import NetworkState, NetworkType
from lbnet.engine import NetworkEngine
from lbnet.exceptions import ApiCallError, DependencyNotReadyError, PluginError
from lbnet.logging import get_logger
from lbnet.retry_backoff import RetryBackoffCalculator
from lbnet.store import ObjectStore
from lbnet.types import AllocationRecord, Replica

logger = get_logger("controller")

_NETWORK_TYPES = {t.value for t in NetworkType}


class EventKind(Enum):
    """Replica lifecycle event kinds."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class ReplicaEvent:
    """One queued lifecycle event."""

    kind: EventKind
    namespace: str
    name: str
    replica: Replica | None = None
    attempt: int = 0

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.kind.value, self.namespace, self.name)


@dataclass
class LoopStats:
    """Counters of the reconcile loop."""

    processed: int = 0
    ready: int = 0
    requeued: int = 0
    dropped: int = 0
    prewarm_passes: int = 0
    last_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "processed": self.processed,
            "ready": self.ready,
            "requeued": self.requeued,
            "dropped": self.dropped,
            "prewarm_passes": self.prewarm_passes,
            "last_errors": list(self.last_errors),
        }


class ReconcileLoop:
    """Delay-queue driven reconcile loop with a worker pool."""

    MAX_RECENT_ERRORS = 20

    def __init__(
        self,
        engine: NetworkEngine,
        store: ObjectStore,
        config: ControllerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize ReconcileLoop.

        Args:
            engine: Engine providing the lifecycle hooks
            store: Store replicas are read from and written back to
            config: Worker count, backoff and prewarm settings
            clock: Monotonic time source
        """
        self.engine = engine
        self.store = store
        self.config = config
        self.stats = LoopStats()
        self._clock = clock
        self._queue: list[tuple[float, int, ReplicaEvent]] = []
        self._pending: set[tuple[str, str, str]] = set()
        self._inflight: set[tuple[str, str]] = set()
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, event: ReplicaEvent, delay: float = 0.0) -> bool:
        """Queue an event unless the same event is already pending.

        Returns:
            True if the event was queued
        """
        with self._cond:
            if event.key in self._pending:
                return False
            self._pending.add(event.key)
            heapq.heappush(self._queue, (self._clock() + delay, next(self._seq), event))
            self._cond.notify()
        return True

    def replica_added(self, replica: Replica) -> bool:
        return self.enqueue(ReplicaEvent(EventKind.ADDED, replica.namespace, replica.name))

    def replica_updated(self, replica: Replica) -> bool:
        return self.enqueue(ReplicaEvent(EventKind.UPDATED, replica.namespace, replica.name))

    def replica_deleted(self, replica: Replica) -> bool:
        return self.enqueue(ReplicaEvent(EventKind.DELETED, replica.namespace, replica.name, copy.deepcopy(replica)))

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def _pop_due(self) -> ReplicaEvent | None:
        with self._cond:
            now = self._clock()
            deferred: list[tuple[float, int, ReplicaEvent]] = []
            found: ReplicaEvent | None = None
            while self._queue and self._queue[0][0] <= now:
                item = heapq.heappop(self._queue)
                event = item[2]
                if (event.namespace, event.name) in self._inflight:
                    deferred.append(item)
                    continue
                found = event
                break
            for item in deferred:
                heapq.heappush(self._queue, item)
            if found is not None:
                self._pending.discard(found.key)
                self._inflight.add((found.namespace, found.name))
            return found

    def _next_due(self) -> float | None:
        with self._cond:
            return self._queue[0][0] if self._queue else None

    def resync(self) -> int:
        """Queue every replica carrying a handled network type.

        Returns:
            Number of events queued
        """
        queued = 0
        for replica in self.store.list_replicas(self.engine.namespace):
            if replica.network_type not in _NETWORK_TYPES:
                continue
            if replica.deleting:
                queued += self.replica_deleted(replica)
            else:
                queued += self.replica_updated(replica)
        logger.info(f"Resync queued {queued} replicas")
        return queued

    def _orphaned(self, record: AllocationRecord) -> bool:
        if record.fixed:
            return False
        namespace, _, name = record.owner_key.partition("/")
        if self.store.get_replica(namespace, name) is not None:
            return False
        return self.store.get_network_object(namespace, name) is None

    def release_orphans(self) -> int:
        """Release shared allocations whose replica and network object are both gone.

        Replicas without a finalizer can vanish between resyncs without a
        delete event reaching the loop.

        Returns:
            Number of records released
        """
        released = self.engine.allocator.release_where(self._orphaned)
        for record in released:
            logger.warning(f"Released orphaned allocation of {record.owner_key}: {record.ports}")
        return len(released)

    def resync_pass(self) -> int:
        """Release orphaned allocations, then queue every replica again.

        Returns:
            Number of events queued
        """
        self.release_orphans()
        return self.resync()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _persist(self, before: Replica, after: Replica) -> None:
        if (before.annotations, before.labels, before.finalizers) == (
            after.annotations,
            after.labels,
            after.finalizers,
        ):
            return
        self.store.update_replica(after)

    def _requeue(self, event: ReplicaEvent, attempt: int) -> None:
        delay = RetryBackoffCalculator.for_controller(self.config, attempt)
        if self.enqueue(replace(event, attempt=attempt), delay):
            self.stats.requeued += 1
            logger.debug(f"Requeued {event.kind.value} {event.namespace}/{event.name} in {delay:.1f}s")

    def _record_error(self, message: str) -> None:
        self.stats.last_errors.append(message)
        del self.stats.last_errors[: -self.MAX_RECENT_ERRORS]

    def _handle_failure(self, event: ReplicaEvent, err: PluginError) -> None:
        target = f"{event.kind.value} {event.namespace}/{event.name}"
        if isinstance(err.__cause__, DependencyNotReadyError):
            self._requeue(event, min(event.attempt + 1, self.config.max_retries or 1))
            return
        self._record_error(f"{target}: {err}")
        if not err.retryable:
            logger.error(f"Dropping {target}, error is not retryable: {err}")
            self.stats.dropped += 1
            return
        if event.attempt >= self.config.max_retries:
            logger.error(f"Dropping {target} after {event.attempt} retries: {err}")
            self.stats.dropped += 1
            return
        logger.warning(f"{target} failed (attempt {event.attempt + 1}/{self.config.max_retries}): {err}")
        self._requeue(event, event.attempt + 1)

    def process(self, event: ReplicaEvent) -> None:
        """Handle one event. Failures are requeued or dropped, never raised."""
        replica = self.store.get_replica(event.namespace, event.name)
        if event.kind is EventKind.DELETED:
            replica = replica or event.replica
        if replica is None:
            logger.debug(f"Replica {event.namespace}/{event.name} is gone, skipping {event.kind.value}")
            return
        if replica.deleting and event.kind is not EventKind.DELETED:
            event = ReplicaEvent(EventKind.DELETED, event.namespace, event.name, replica)

        before = copy.deepcopy(replica)
        try:
            if event.kind is EventKind.ADDED:
                self._persist(before, self.engine.on_replica_added(replica))
                self.enqueue(ReplicaEvent(EventKind.UPDATED, event.namespace, event.name))
            elif event.kind is EventKind.UPDATED:
                updated, state = self.engine.on_replica_updated(replica)
                self._persist(before, updated)
                if state is NetworkState.READY:
                    self.stats.ready += 1
                else:
                    self._requeue(event, min(event.attempt + 1, self.config.max_retries or 1))
            else:
                self.engine.on_replica_deleted(replica)
        except PluginError as e:
            self._handle_failure(event, e)
        except ApiCallError as e:
            self._handle_failure(event, PluginError.from_error(e))
        finally:
            self.stats.processed += 1

    def _finish(self, event: ReplicaEvent) -> None:
        with self._cond:
            self._inflight.discard((event.namespace, event.name))
            self._cond.notify_all()

    def run_once(self) -> int:
        """Process every event that is due now, in the calling thread.

        Returns:
            Number of events processed
        """
        count = 0
        while True:
            event = self._pop_due()
            if event is None:
                return count
            try:
                self.process(event)
            finally:
                self._finish(event)
            count += 1

    def prewarm_pass(self) -> None:
        """Run the periodic prewarm and allocator consistency pass."""
        results = self.engine.prewarm_all()
        for result in results:
            for error in result.errors:
                self._record_error(f"prewarm {result.workload_set}: {error}")
        self.engine.verify()
        self.stats.prewarm_passes += 1

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _worker(self) -> None:
        while not self._stop.is_set():
            event = self._pop_due()
            if event is None:
                due = self._next_due()
                timeout = 1.0 if due is None else max(0.0, min(1.0, due - self._clock()))
                with self._cond:
                    self._cond.wait(timeout)
                continue
            try:
                self.process(event)
            except Exception as e:  # noqa: BLE001
                logger.exception(f"Unexpected error handling {event.kind.value} {event.namespace}/{event.name}: {e}")
                self._record_error(str(e))
            finally:
                self._finish(event)

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.config.resync_interval_seconds):
            try:
                self.resync_pass()
            except Exception as e:  # noqa: BLE001
                logger.exception(f"Resync failed: {e}")

    def _prewarm_loop(self) -> None:
        while not self._stop.wait(self.config.prewarm_interval_seconds):
            try:
                self.prewarm_pass()
            except Exception as e:  # noqa: BLE001
                logger.exception(f"Prewarm pass failed: {e}")

    def start(self) -> None:
        """Initialize the engine, queue all replicas, then start the background threads."""
        self.engine.initialize()
        self.resync()
        self._stop.clear()
        for i in range(self.config.workers):
            thread = threading.Thread(target=self._worker, name=f"lbnet-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        prewarm = threading.Thread(target=self._prewarm_loop, name="lbnet-prewarm", daemon=True)
        prewarm.start()
        self._threads.append(prewarm)
        resync = threading.Thread(target=self._resync_loop, name="lbnet-resync", daemon=True)
        resync.start()
        self._threads.append(resync)
        logger.info(f"Reconcile loop started with {self.config.workers} workers")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop all threads."""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info(f"Reconcile loop stopped: {self.stats.to_dict()}")
