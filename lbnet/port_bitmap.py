"""Booked/free port map of one load balancer."""

from __future__ import annotations

from collections.abc import Iterable

from lbnet.exceptions import PortsExhaustedError


class PortBitmap:
    """Booked/free map of the half-open range ``[min_port, max_port)``.

    A port is booked iff it belongs to a live allocation or is blocked.
    Blocked ports are booked at construction and never cleared. Not
    thread-safe on its own; the owning allocator serialises access.
    """

    def __init__(self, min_port: int, max_port: int, block_ports: Iterable[int] = ()) -> None:
        if min_port >= max_port:
            raise ValueError(f"Empty port range [{min_port}, {max_port})")
        self.min_port = min_port
        self.max_port = max_port
        self._blocked = frozenset(p for p in block_ports if min_port <= p < max_port)
        self._booked: dict[int, bool] = {p: p in self._blocked for p in range(min_port, max_port)}

    def __contains__(self, port: object) -> bool:
        return port in self._booked

    def __len__(self) -> int:
        return len(self._booked)

    @property
    def blocked(self) -> frozenset[int]:
        return self._blocked

    def is_blocked(self, port: int) -> bool:
        return port in self._blocked

    def is_booked(self, port: int) -> bool:
        """Check whether a port is booked. Ports outside the range read as booked."""
        return self._booked.get(port, True)

    def free_count(self) -> int:
        """Number of free, non-blocked ports."""
        return sum(1 for booked in self._booked.values() if not booked)

    def booked_ports(self) -> list[int]:
        """Booked ports excluding blocked ones, ascending."""
        return [p for p, booked in self._booked.items() if booked and p not in self._blocked]

    def take(self, count: int) -> list[int]:
        """Book the lowest ``count`` free ports.

        Args:
            count: Number of ports to book

        Returns:
            Booked ports in ascending order

        Raises:
            PortsExhaustedError: If fewer than ``count`` ports are free. No
                port stays booked in that case.
        """
        if count <= 0:
            raise ValueError(f"Port count must be positive, got {count}")

        taken: list[int] = []
        for port in range(self.min_port, self.max_port):
            if len(taken) == count:
                break
            if not self._booked[port]:
                self._booked[port] = True
                taken.append(port)

        if len(taken) < count:
            # Roll back the tentative bookings
            for port in taken:
                self._booked[port] = False
            raise PortsExhaustedError(
                f"Only {len(taken)} of {count} ports free in [{self.min_port}, {self.max_port})",
                requested=count,
            )
        return taken

    def mark(self, ports: Iterable[int]) -> tuple[list[int], list[int]]:
        """Book specific ports, skipping out-of-range ones.

        Args:
            ports: Ports to book

        Returns:
            Tuple of (newly booked ports, ports that were already booked)
        """
        marked: list[int] = []
        conflicts: list[int] = []
        for port in ports:
            if port not in self._booked or port in marked:
                continue
            if self._booked[port]:
                conflicts.append(port)
                continue
            self._booked[port] = True
            marked.append(port)
        return marked, conflicts

    def clear(self, ports: Iterable[int]) -> None:
        """Free ports, then re-book any blocked port among them."""
        for port in ports:
            if port in self._booked:
                self._booked[port] = False
        for port in self._blocked:
            self._booked[port] = True

    def copy(self) -> PortBitmap:
        clone = PortBitmap.__new__(PortBitmap)
        clone.min_port = self.min_port
        clone.max_port = self.max_port
        clone._blocked = self._blocked
        clone._booked = dict(self._booked)
        return clone

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PortBitmap):
            return NotImplemented
        return (
            self.min_port == other.min_port
            and self.max_port == other.max_port
            and self._blocked == other._blocked
            and self._booked == other._booked
        )

    def __repr__(self) -> str:
        return (
            f"<PortBitmap [{self.min_port}, {self.max_port}) "
            f"booked={len(self.booked_ports())} blocked={len(self._blocked)}>"
        )
