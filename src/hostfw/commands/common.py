"""Shared CLI options and helpers."""

from pathlib import Path
from typing import Annotated, Optional

import typer

from hostfw.core.config import DEFAULT_CONFIG_PATH
from hostfw.core.context import ExecutionContext, create_context
from hostfw.core.exceptions import HostfwError
from hostfw.core.output import console
from hostfw.services.firewall import FirewallService
from hostfw.services.rules import Rule


# Options shared by every firewall command
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Print the firewall commands instead of running them; nothing is saved.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Only print warnings and errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Plain output without ANSI colours.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"hostfw configuration file [default: {DEFAULT_CONFIG_PATH}].",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def get_service(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> tuple[ExecutionContext, FirewallService]:
    """Create context and firewall service from CLI options."""
    ctx = create_context(
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )
    return ctx, FirewallService(ctx)


def handle_error(error: HostfwError) -> None:
    """Print a HostfwError with details and hint, then exit with its code."""
    console.error(error.message)
    for line in error.details:
        console.print(f"    [dim]{line}[/dim]")
    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def rule_row(rule: Rule) -> list[str]:
    """Table row for one rule."""
    status = "[green]enabled[/green]" if rule.enabled else "[dim]disabled[/dim]"
    if rule.divergent:
        status += " [red](divergent)[/red]"
    return [
        str(rule.id),
        rule.kind.value,
        rule.strategy.value.upper(),
        rule.family.value if rule.family else "any",
        rule.protocol.value if rule.protocol else "-",
        rule.port_spec or "-",
        rule.address or rule.source_address or "anywhere",
        status,
        rule.description or "",
    ]


RULE_COLUMNS = ["ID", "Kind", "Strategy", "Family", "Proto", "Ports", "Address", "Status", "Description"]


def show_rules(title: str, rules: list[Rule]) -> None:
    """Print rules as a table."""
    console.table(title, RULE_COLUMNS, [rule_row(r) for r in rules])
