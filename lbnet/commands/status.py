"""lbnet status command - show allocator and replica network state."""

import json

import click

import lbnet.rendering.status_renderer as _status_renderer
from lbnet.commands._utils import build_engine
from lbnet.constants import NetworkType
from lbnet.logging import get_logger

# Tests patch ``lbnet.commands.status.console``
console = _status_renderer.console
logger = get_logger("status")


@click.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--replicas", "replicas_view", is_flag=True, help="Show per-replica network state")
@click.pass_context
def status(ctx: click.Context, json_output: bool, replicas_view: bool) -> None:
    """Rebuild allocator state from the cluster and show it.

    Read-only: nothing is written back.
    """
    try:
        engine = build_engine(ctx)
        result = engine.reconstructor.reconstruct(engine.namespace)
        snapshot = engine.allocator.snapshot()

        if json_output:
            data = _status_renderer.build_status_output(snapshot)
            data["reconstruction"] = result.to_dict()
            console.print_json(json.dumps(data))
            return

        _status_renderer.show_reconstruction(result, _console=console)
        _status_renderer.show_allocator_status(snapshot, _console=console)

        if replicas_view:
            handled = {t.value for t in NetworkType}
            replicas = [r for r in engine.store.list_replicas(engine.namespace) if r.network_type in handled]
            _status_renderer.show_replica_states(replicas, _console=console)
    except Exception as e:  # noqa: BLE001 -- top-level CLI error handler
        console.print(f"\n[red]Error:[/red] {e}")
        logger.debug("Status failed", exc_info=True)
        raise SystemExit(1) from None
