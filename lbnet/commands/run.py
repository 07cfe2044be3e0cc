"""lbnet run command - start the reconcile loop."""

import time

import click

import lbnet.rendering.status_renderer as _status_renderer
from lbnet.commands._utils import build_engine, get_config
from lbnet.controller import ReconcileLoop
from lbnet.logging import get_logger

console = _status_renderer.console
logger = get_logger("run")


@click.command()
@click.option("--once", is_flag=True, help="Process every replica once and exit")
@click.option("--workers", type=int, default=None, help="Override controller.workers")
@click.pass_context
def run(ctx: click.Context, once: bool, workers: int | None) -> None:
    """Reconstruct state, then reconcile replicas until interrupted.

    Examples:

        lbnet run

        lbnet --config lbnet.yaml run --workers 8

        lbnet run --once
    """
    try:
        config = get_config(ctx)
        if workers is not None:
            config.controller.workers = workers
        engine = build_engine(ctx)
        loop = ReconcileLoop(engine, engine.store, config.controller)

        if once:
            result = engine.initialize()
            loop.resync()
            processed = loop.run_once()
            _status_renderer.show_reconstruction(result, _console=console)
            console.print(
                f"Processed {processed} events, {loop.stats.ready} ready, {loop.pending()} still pending"
            )
            return

        loop.start()
        console.print(f"[green]Reconciling[/green] with {config.controller.workers} workers, Ctrl+C to stop")
        try:
            while True:
                time.sleep(1)
        finally:
            loop.stop()
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")
    except Exception as e:  # noqa: BLE001 -- top-level CLI error handler
        console.print(f"\n[red]Error:[/red] {e}")
        logger.debug("Run failed", exc_info=True)
        raise SystemExit(1) from None
