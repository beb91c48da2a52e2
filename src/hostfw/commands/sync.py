"""Drift and sync commands.

``hostfw sync`` is idempotent and can be run:
- Manually after editing the firewall by hand
- At boot, before any other hostfw command
- After a batch reported divergent rules
"""

from typing import Annotated, Optional

import typer

from hostfw.commands.common import (
    ConfigOption,
    DryRunOption,
    NoColorOption,
    QuietOption,
    VerboseOption,
    get_service,
    handle_error,
)
from hostfw.core.exceptions import HostfwError
from hostfw.services.reconciler import DriftReport


def _show_report(report: DriftReport, console) -> None:
    for descriptor in report.missing:
        console.print(f"  [yellow]missing[/yellow]     {descriptor}")
    for descriptor in report.unexpected:
        console.print(f"  [red]unexpected[/red]  {descriptor}")


def drift(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Compare the rule catalogue with the live firewall (read only).

    Exits with code 1 when the two differ.
    """
    ctx, service = get_service(verbose=verbose, no_color=no_color, config=config)
    try:
        report = service.detect_drift()
    except HostfwError as e:
        handle_error(e)
        return

    if report.in_sync:
        ctx.console.success("Live firewall matches the catalogue")
        return

    ctx.console.warn(
        f"Drift detected: {len(report.missing)} missing, "
        f"{len(report.unexpected)} unexpected"
    )
    _show_report(report, ctx.console)
    ctx.console.hint("Run 'hostfw sync' to re-apply, or 'hostfw sync --prune' to also remove")
    raise typer.Exit(1)


def sync(
    prune: Annotated[
        Optional[bool],
        typer.Option(
            "--prune/--no-prune",
            help="Remove hostfw entries unknown to the catalogue (default from config)",
        ),
    ] = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Bring the live firewall in line with the rule catalogue.

    Re-applies missing entries, reports (or prunes) unexpected ones,
    clears divergent flags and saves the ruleset.

    [bold]Examples:[/bold]

        hostfw sync
        hostfw sync --prune
    """
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        report = service.sync(prune=prune)
    except HostfwError as e:
        handle_error(e)
        return

    _show_report(report, ctx.console)
    ctx.console.operation_summary("Sync", True, {
        "Re-applied": len(report.applied),
        "Pruned": len(report.pruned),
        "Unexpected kept": len(report.unexpected) - len(report.pruned),
        "Divergent cleared": len(report.cleared),
    })
