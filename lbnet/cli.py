"""lbnet CLI entry point."""

import click

from lbnet import __version__
from lbnet.commands import prewarm, reconstruct, run, status
from lbnet.config import LbnetConfig
from lbnet.logging import configure_logging, set_log_context


@click.group()
@click.version_option(version=__version__, prog_name="lbnet")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to configuration file (default: lbnet.yaml)",
)
@click.option("--namespace", "-n", default=None, help="Restrict to one namespace")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"]),
    default=None,
    help="Override logging.level",
)
@click.option("--instance", default=None, help="Instance name attached to every log record")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    namespace: str | None,
    log_level: str | None,
    instance: str | None,
) -> None:
    """lbnet - load-balancer port allocation for game-server replicas.

    Binds replicas to ports on shared load balancers or to prewarmed
    per-workload-set load balancers, and reports their network readiness.
    """
    ctx.ensure_object(dict)

    config = ctx.obj.get("config") or LbnetConfig.load(config_path)
    if namespace:
        config.kubernetes.namespace = namespace
    if log_level:
        config.logging.level = log_level
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path

    configure_logging(config.logging)
    if instance:
        set_log_context(instance=instance)


# Register implemented commands
cli.add_command(status)
cli.add_command(reconstruct)
cli.add_command(prewarm)
cli.add_command(run)


if __name__ == "__main__":
    cli()
