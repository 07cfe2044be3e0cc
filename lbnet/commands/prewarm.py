"""lbnet prewarm command - run one prewarming pass."""

import json

import click

import lbnet.rendering.status_renderer as _status_renderer
from lbnet.commands._utils import build_engine
from lbnet.logging import get_logger

console = _status_renderer.console
logger = get_logger("prewarm_cmd")


@click.command()
@click.option("--workload-set", "-w", "workload_set", help="Only prewarm this workload set")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def prewarm(ctx: click.Context, workload_set: str | None, json_output: bool) -> None:
    """Create missing pool load balancers and elastic IPs.

    High-water marks start from each workload set's replica count.
    """
    try:
        engine = build_engine(ctx)
        results = []
        for ws, conf in engine.pooled_workload_sets():
            if workload_set and ws.name != workload_set:
                continue
            engine.prewarm.seed(ws)
            results.append(engine.prewarm.reconcile(ws.namespace, ws.name, conf))

        if json_output:
            console.print_json(json.dumps([r.to_dict() for r in results]))
        else:
            _status_renderer.show_prewarm_results(results, _console=console)

        if any(not r.success for r in results):
            raise SystemExit(1)
    except Exception as e:  # noqa: BLE001 -- top-level CLI error handler
        console.print(f"\n[red]Error:[/red] {e}")
        logger.debug("Prewarm failed", exc_info=True)
        raise SystemExit(1) from None
