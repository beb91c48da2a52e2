"""``hostfw config`` commands."""

from typing import Annotated

import typer

from hostfw.commands.common import ConfigOption, NoColorOption, VerboseOption, handle_error
from hostfw.core.config import get_example_config, init_config
from hostfw.core.context import create_context
from hostfw.core.exceptions import HostfwError


config_app = typer.Typer(
    name="config",
    help="Show or create the hostfw configuration file.",
    no_args_is_help=True,
)


@config_app.command("show")
def show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Print the effective settings, HOSTFW_* overrides included."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)
    try:
        rendered = ctx.config.to_yaml()
    except HostfwError as e:
        handle_error(e)
        return

    source = ctx.config_path if ctx.config_path.exists() else f"{ctx.config_path} (not found, defaults)"
    ctx.console.print(f"[bold]Source:[/bold] {source}")
    ctx.console.yaml(rendered, title="Effective configuration")


@config_app.command("init")
def init(
    config: ConfigOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Replace an existing file.", is_flag=True),
    ] = False,
    no_color: NoColorOption = False,
) -> None:
    """Write the commented example configuration (mode 0600)."""
    ctx = create_context(no_color=no_color, config=config)
    try:
        init_config(ctx.config_path, force=force)
    except HostfwError as e:
        handle_error(e)
        return

    ctx.console.success(f"Wrote {ctx.config_path}")
    ctx.console.hint("Pick the backend for this host, then run: hostfw sync")


@config_app.command("example")
def example() -> None:
    """Print the example configuration to stdout."""
    typer.echo(get_example_config(), nl=False)
