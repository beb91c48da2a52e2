"""hostfw command line entry point.

The root Typer app only wires the command modules together; each
command builds its own execution context from its options.
"""

from typing import Annotated

import typer

from hostfw import __version__
from hostfw.commands import batch, rules, sync
from hostfw.commands.config import config_app


app = typer.Typer(
    name="hostfw",
    help="Declarative host firewall rule manager.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
)

app.add_typer(rules.port_app, name="port")
app.add_typer(rules.ip_app, name="ip")
app.add_typer(config_app, name="config")

for name, command in (
    ("delete", rules.delete),
    ("search", rules.search),
    ("batch", batch.batch),
    ("drift", sync.drift),
    ("sync", sync.sync),
):
    app.command(name)(command)


def _print_version(value: bool) -> None:
    if value:
        typer.echo(f"hostfw version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=_print_version,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Keep a catalogue of port and address rules in force on this host.

    Rules are enforced through iptables, firewalld or nftables, chosen
    in the configuration file.

    [bold]Examples:[/bold]
        hostfw port add --port 8080 --protocol tcp --strategy accept
        hostfw ip add --address 203.0.113.0/24 --strategy drop
        hostfw search --kind port
        hostfw batch changes.yaml --dry-run
        hostfw sync
    """


if __name__ == "__main__":
    app()
