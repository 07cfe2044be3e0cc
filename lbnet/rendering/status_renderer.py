"""Rich rendering of allocator, reconstruction, prewarm and replica state.

Functions that produce terminal output accept an optional ``_console``
parameter. When omitted they use the module-level default, which tests
patch through ``lbnet.rendering.status_renderer.console``.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lbnet.allocator import AllocatorSnapshot
from lbnet.cold_start import ReconstructionResult
from lbnet.constants import NetworkState
from lbnet.network_manager import NetworkManager
from lbnet.prewarm import PrewarmResult
from lbnet.types import Replica

console = Console()

STATE_STYLES = {
    NetworkState.READY: "green",
    NetworkState.NOT_READY: "yellow",
    NetworkState.WAITING: "dim",
}


def usage_bar(used: int, total: int, width: int = 20) -> str:
    """Render a usage bar like ``[#####---------------] 25%``."""
    if total <= 0:
        return f"[{'-' * width}] n/a"
    filled = round(width * used / total)
    return f"[{'#' * filled}{'-' * (width - filled)}] {round(100 * used / total)}%"


def build_status_output(snapshot: AllocatorSnapshot) -> dict[str, Any]:
    """Build the JSON status document of an allocator snapshot."""
    data = snapshot.to_dict()
    data["total_records"] = len(snapshot.records)
    return data


def render_allocator_table(snapshot: AllocatorSnapshot) -> Table:
    """Table with one row per load balancer."""
    capacity = (snapshot.max_port - snapshot.min_port) - len(snapshot.block_ports)
    owners: dict[str, int] = {}
    for record in snapshot.records.values():
        owners[record.load_balancer_id] = owners.get(record.load_balancer_id, 0) + 1

    table = Table(title=f"Port range [{snapshot.min_port}, {snapshot.max_port})")
    table.add_column("Load balancer", style="cyan")
    table.add_column("Owners", justify="right")
    table.add_column("Booked", justify="right")
    table.add_column("Free", justify="right")
    table.add_column("Usage")
    for lb_id, bitmap in sorted(snapshot.bitmaps.items()):
        free = bitmap.free_count()
        booked = capacity - free
        table.add_row(lb_id, str(owners.get(lb_id, 0)), str(booked), str(free), usage_bar(booked, capacity))
    return table


def show_allocator_status(snapshot: AllocatorSnapshot, _console: Console | None = None) -> None:
    """Print the allocator table."""
    out = _console or console
    if not snapshot.bitmaps:
        out.print("[dim]No shared load balancer has allocations[/dim]")
        return
    out.print(render_allocator_table(snapshot))
    blocked = ", ".join(str(p) for p in snapshot.block_ports) or "none"
    out.print(f"Blocked ports: {blocked}")


def show_reconstruction(result: ReconstructionResult, _console: Console | None = None) -> None:
    """Print a cold-start summary and its divergences."""
    out = _console or console
    style = "green" if result.clean else "yellow"
    out.print(
        Panel(
            f"Objects scanned: {result.objects_scanned}\n"
            f"Records rebuilt: {result.records_rebuilt}\n"
            f"Load balancers:  {result.load_balancers}\n"
            f"Skipped:         {len(result.skipped)}",
            title="Cold start",
            border_style=style,
        )
    )
    if result.divergences:
        table = Table(title="Ports claimed twice")
        table.add_column("Load balancer", style="cyan")
        table.add_column("Port", justify="right")
        table.add_column("Kept")
        table.add_column("Dropped", style="red")
        for d in result.divergences:
            table.add_row(d.load_balancer_id, str(d.port), d.kept_owner, d.dropped_owner)
        out.print(table)


def show_prewarm_results(results: list[PrewarmResult], _console: Console | None = None) -> None:
    """Print one row per prewarmed workload set."""
    out = _console or console
    if not results:
        out.print("[dim]No pooled workload sets found[/dim]")
        return
    table = Table(title="Prewarm")
    table.add_column("Workload set", style="cyan")
    table.add_column("Expected", justify="right")
    table.add_column("Existing")
    table.add_column("Created LBs", justify="right")
    table.add_column("Created EIPs", justify="right")
    table.add_column("Pending")
    table.add_column("Errors", style="red")
    for r in results:
        existing = ", ".join(f"{lt}={n}" for lt, n in sorted(r.existing.items())) or "-"
        table.add_row(
            r.workload_set,
            "-" if r.skipped else str(r.expected_count),
            existing,
            str(len(r.created_load_balancers)),
            str(len(r.created_elastic_ips)),
            ", ".join(r.pending) or "-",
            "; ".join(r.errors) or "-",
        )
    out.print(table)


def show_replica_states(replicas: list[Replica], _console: Console | None = None) -> None:
    """Print the network state and external addresses of replicas."""
    out = _console or console
    table = Table(title="Replicas")
    table.add_column("Replica", style="cyan")
    table.add_column("Type")
    table.add_column("State")
    table.add_column("Disabled")
    table.add_column("External")
    for replica in replicas:
        manager = NetworkManager(replica)
        state = manager.get_network_state()
        status = manager.get_network_status()
        external = []
        if status is not None:
            for address in status.external_addresses:
                ports = ",".join(f"{p.port}/{p.protocol}" for p in address.ports)
                external.append(f"{address.end_point or address.ip}:{ports}")
        table.add_row(
            replica.key,
            replica.network_type or "-",
            f"[{STATE_STYLES[state]}]{state.value}[/{STATE_STYLES[state]}]",
            "yes" if manager.disabled else "no",
            " ".join(external) or "-",
        )
    out.print(table)
