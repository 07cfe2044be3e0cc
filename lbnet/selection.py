"""Load-balancer selection policies for new allocations."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from lbnet.exceptions import PortsExhaustedError
from lbnet.logging import get_logger

logger = get_logger("selection")

# Maps a load-balancer id to its free (non-blocked) port count
CapacityFn = Callable[[str], int]


class SelectionPolicy(ABC):
    """Choose which candidate load balancer receives an allocation."""

    name: str = "base"

    @abstractmethod
    def select(self, capacity: CapacityFn, candidates: Sequence[str], count: int) -> str:
        """Pick a candidate with at least ``count`` free ports.

        Args:
            capacity: Free-port count per load balancer
            candidates: Ordered candidate load-balancer ids
            count: Ports requested

        Returns:
            The chosen load-balancer id

        Raises:
            PortsExhaustedError: If no candidate has enough free ports
        """

    @staticmethod
    def _exhausted(candidates: Sequence[str], count: int) -> PortsExhaustedError:
        return PortsExhaustedError(
            f"No load balancer among {list(candidates)} has {count} free ports",
            candidates=list(candidates),
            requested=count,
        )


class FirstFitPolicy(SelectionPolicy):
    """First candidate, in list order, whose free capacity covers the request."""

    name = "first-fit"

    def select(self, capacity: CapacityFn, candidates: Sequence[str], count: int) -> str:
        for lb_id in candidates:
            if capacity(lb_id) >= count:
                return lb_id
        raise self._exhausted(candidates, count)


class ScatterPolicy(SelectionPolicy):
    """Round-robin over candidates starting from a cursor.

    The cursor lives in process memory and restarts at zero after a
    restart, so spreading is best effort.
    """

    name = "scatter"

    def __init__(self) -> None:
        self._cursor = 0
        self._lock = threading.Lock()

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def select(self, capacity: CapacityFn, candidates: Sequence[str], count: int) -> str:
        if not candidates:
            raise self._exhausted(candidates, count)

        with self._lock:
            start = self._cursor % len(candidates)
            for offset in range(len(candidates)):
                idx = (start + offset) % len(candidates)
                lb_id = candidates[idx]
                if capacity(lb_id) >= count:
                    self._cursor = idx + 1
                    logger.debug(f"Scatter picked {lb_id} at index {idx}, next start {self._cursor}")
                    return lb_id
        raise self._exhausted(candidates, count)

    def reset(self) -> None:
        with self._lock:
            self._cursor = 0


def policy_for(enable_scatter: bool, scatter: ScatterPolicy | None = None) -> SelectionPolicy:
    """Return the policy matching a replica's scatter flag.

    Args:
        enable_scatter: Whether round-robin scatter is requested
        scatter: Shared scatter policy carrying the process-wide cursor

    Returns:
        Selection policy instance
    """
    if enable_scatter:
        return scatter if scatter is not None else ScatterPolicy()
    return FirstFitPolicy()
