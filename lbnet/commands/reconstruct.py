"""lbnet reconstruct command - dry-run the cold-start reconstruction."""

import json

import click

import lbnet.rendering.status_renderer as _status_renderer
from lbnet.commands._utils import build_engine
from lbnet.exceptions import ConsistencyError
from lbnet.logging import get_logger

console = _status_renderer.console
logger = get_logger("reconstruct")


@click.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--strict", is_flag=True, help="Exit non-zero when a port is claimed twice")
@click.pass_context
def reconstruct(ctx: click.Context, json_output: bool, strict: bool) -> None:
    """Rebuild allocator state from network objects and verify it.

    Examples:

        lbnet reconstruct

        lbnet reconstruct --strict --json
    """
    try:
        engine = build_engine(ctx)
        result = engine.reconstructor.reconstruct(engine.namespace)

        consistent = True
        try:
            engine.allocator.verify_consistency()
        except ConsistencyError as e:
            consistent = False
            console.print(f"[red]Inconsistent state:[/red] {e}")

        if json_output:
            data = result.to_dict()
            data["consistent"] = consistent
            console.print_json(json.dumps(data))
        else:
            _status_renderer.show_reconstruction(result, _console=console)

        if not consistent or (strict and not result.clean):
            raise SystemExit(1)
    except Exception as e:  # noqa: BLE001 -- top-level CLI error handler
        console.print(f"\n[red]Error:[/red] {e}")
        logger.debug("Reconstruction failed", exc_info=True)
        raise SystemExit(1) from None
