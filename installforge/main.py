"""
installforge — CLI entrypoint.

Usage:
    installforge --help
    installforge compose lint web/compose.yml db/compose.yml
    installforge build project shop --mock
"""

from __future__ import annotations

from pathlib import Path

import click

from installforge import __version__
from installforge.core.observability.logging_config import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="installforge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to installforge.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """installforge — compose modules into offline installers."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None     # IFG_LOG_LEVEL or WARNING
    setup_logging(level=level)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address.")
@click.option("--port", "-p", default=8000, type=int, help="Port number.")
@click.option("--mock", is_flag=True, help="Use the mock registry (no network).")
@click.pass_context
def web(ctx: click.Context, host: str, port: int, mock: bool) -> None:
    """Start the build API server."""
    from installforge.core.errors import ForgeError
    from installforge.ui.cli.helpers import fail, settings_for
    from installforge.ui.web.server import create_app, run_server

    try:
        settings = settings_for(ctx)
    except ForgeError as e:
        fail(e)
    if mock:
        settings = settings.model_copy(update={"registry": "mock"})
    app = create_app(settings=settings)
    debug = ctx.obj.get("debug", False)

    click.echo()
    click.secho("⚡ installforge — build API", bold=True)
    click.echo(f"   API:       http://{host}:{port}/api")
    click.echo(f"   Data dir:  {settings.data_dir}")
    click.echo(f"   Slots:     {settings.max_concurrent_builds}")
    if mock:
        click.secho("   Registry: mock (no network)", fg="yellow")
    click.echo()

    run_server(app, host=host, port=port, debug=debug)


# ── Register sub-command groups from installforge/ui/cli/ ──────

from installforge.ui.cli.build import build  # noqa: E402
from installforge.ui.cli.compose import compose  # noqa: E402
from installforge.ui.cli.module import module  # noqa: E402

cli.add_command(compose)
cli.add_command(build)
cli.add_command(module)


if __name__ == "__main__":
    cli()
