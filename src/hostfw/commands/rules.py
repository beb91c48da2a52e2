"""Rule commands: port and address rules, delete and search.

Examples:
    hostfw port add --port 8080 --protocol tcp --strategy accept
    hostfw port update 3 --port 8000-8100 --protocol tcp --strategy accept
    hostfw ip add --address 203.0.113.0/24 --strategy drop
    hostfw delete 3 4
    hostfw search --kind port --info web
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
    show_rules,
)
from hostfw.core.exceptions import HostfwError, ValidationError
from hostfw.services.rules import RuleDraft, RuleKind, Strategy
from hostfw.services.search import ORDER_DIRECTIONS, ORDER_FIELDS, RuleFilter


port_app = typer.Typer(
    name="port",
    help="Manage port rules.",
    no_args_is_help=True,
)

ip_app = typer.Typer(
    name="ip",
    help="Manage address (IP/CIDR) rules.",
    no_args_is_help=True,
)


StrategyOption = Annotated[
    str,
    typer.Option("--strategy", "-s", help="accept or drop"),
]

DescriptionOption = Annotated[
    Optional[str],
    typer.Option("--description", "-d", help="Free text note"),
]

DisabledOption = Annotated[
    bool,
    typer.Option("--disabled", help="Store the rule without enforcing it"),
]

FamilyOption = Annotated[
    Optional[str],
    typer.Option("--family", help="ipv4 or ipv6 (inferred from the address)"),
]


# =============================================================================
# Port rules
# =============================================================================

def _port_draft(
    port: str,
    protocol: str,
    strategy: str,
    source: Optional[str],
    family: Optional[str],
    description: Optional[str],
    disabled: bool,
) -> RuleDraft:
    return RuleDraft(
        kind=RuleKind.PORT.value,
        strategy=strategy,
        protocol=protocol,
        port_spec=port,
        source_address=source,
        family=family,
        description=description,
        enabled=not disabled,
    )


@port_app.command("add")
def port_add(
    port: Annotated[str, typer.Option("--port", "-p", help="Port, range (80-90) or list (80,443)")],
    protocol: Annotated[str, typer.Option("--protocol", "--proto", help="tcp or udp")] = "tcp",
    strategy: StrategyOption = "accept",
    source: Annotated[
        Optional[str],
        typer.Option("--source", help="Only match this source address or CIDR"),
    ] = None,
    family: FamilyOption = None,
    description: DescriptionOption = None,
    disabled: DisabledOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Create a port rule.

    [bold]Examples:[/bold]

        hostfw port add --port 8080
        hostfw port add --port 5432 --source 10.0.0.0/8
        hostfw port add --port 6000-6100 --protocol udp --strategy drop
    """
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        rule = service.operate_port_rule(
            _port_draft(port, protocol, strategy, source, family, description, disabled)
        )
        ctx.console.success(f"Created rule {rule}")
    except HostfwError as e:
        handle_error(e)


@port_app.command("update")
def port_update(
    rule_id: Annotated[int, typer.Argument(help="Rule id")],
    port: Annotated[str, typer.Option("--port", "-p", help="Port, range (80-90) or list (80,443)")],
    protocol: Annotated[str, typer.Option("--protocol", "--proto", help="tcp or udp")] = "tcp",
    strategy: StrategyOption = "accept",
    source: Annotated[
        Optional[str],
        typer.Option("--source", help="Only match this source address or CIDR"),
    ] = None,
    family: FamilyOption = None,
    description: DescriptionOption = None,
    disabled: DisabledOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Replace a port rule. Options not given fall back to their defaults."""
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        rule = service.update_port_rule(
            rule_id,
            _port_draft(port, protocol, strategy, source, family, description, disabled),
        )
        ctx.console.success(f"Updated rule {rule}")
    except HostfwError as e:
        handle_error(e)


# =============================================================================
# Address rules
# =============================================================================

def _address_draft(
    address: str,
    strategy: str,
    port: Optional[str],
    protocol: Optional[str],
    family: Optional[str],
    description: Optional[str],
    disabled: bool,
) -> RuleDraft:
    return RuleDraft(
        kind=RuleKind.ADDRESS.value,
        strategy=strategy,
        protocol=protocol,
        port_spec=port,
        address=address,
        family=family,
        description=description,
        enabled=not disabled,
    )


@ip_app.command("add")
def ip_add(
    address: Annotated[str, typer.Option("--address", "-a", help="IP address or CIDR")],
    strategy: StrategyOption = "drop",
    port: Annotated[Optional[str], typer.Option("--port", "-p", help="Limit to these ports")] = None,
    protocol: Annotated[
        Optional[str],
        typer.Option("--protocol", "--proto", help="Limit to tcp or udp"),
    ] = None,
    family: FamilyOption = None,
    description: DescriptionOption = None,
    disabled: DisabledOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Create an address rule.

    [bold]Examples:[/bold]

        hostfw ip add --address 203.0.113.7
        hostfw ip add --address 10.0.0.0/8 --strategy accept --port 22 --protocol tcp
    """
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        rule = service.operate_address_rule(
            _address_draft(address, strategy, port, protocol, family, description, disabled)
        )
        ctx.console.success(f"Created rule {rule}")
    except HostfwError as e:
        handle_error(e)


@ip_app.command("update")
def ip_update(
    rule_id: Annotated[int, typer.Argument(help="Rule id")],
    address: Annotated[str, typer.Option("--address", "-a", help="IP address or CIDR")],
    strategy: StrategyOption = "drop",
    port: Annotated[Optional[str], typer.Option("--port", "-p", help="Limit to these ports")] = None,
    protocol: Annotated[
        Optional[str],
        typer.Option("--protocol", "--proto", help="Limit to tcp or udp"),
    ] = None,
    family: FamilyOption = None,
    description: DescriptionOption = None,
    disabled: DisabledOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Replace an address rule. Options not given fall back to their defaults."""
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        rule = service.update_addr_rule(
            rule_id,
            _address_draft(address, strategy, port, protocol, family, description, disabled),
        )
        ctx.console.success(f"Updated rule {rule}")
    except HostfwError as e:
        handle_error(e)


# =============================================================================
# Delete and search
# =============================================================================

def delete(
    rule_ids: Annotated[list[int], typer.Argument(help="Ids of the rules to delete")],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Delete rules by id. Unknown ids abort the whole delete."""
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        removed = service.batch_delete_rule(rule_ids)
        for rule in removed:
            ctx.console.success(f"Deleted rule {rule}")
    except HostfwError as e:
        handle_error(e)


def search(
    kind: Annotated[Optional[str], typer.Option("--kind", help="port or address")] = None,
    strategy: Annotated[Optional[str], typer.Option("--strategy", help="accept or drop")] = None,
    enabled: Annotated[
        Optional[bool],
        typer.Option("--enabled/--disabled", help="Only enabled or only disabled rules"),
    ] = None,
    info: Annotated[
        Optional[str],
        typer.Option("--info", "-i", help="Text in description, address or ports"),
    ] = None,
    page: Annotated[int, typer.Option("--page", help="Page number (from 1)")] = 1,
    page_size: Annotated[int, typer.Option("--page-size", help="Rules per page")] = 20,
    order_by: Annotated[
        str,
        typer.Option("--order-by", help=f"One of: {', '.join(ORDER_FIELDS)}"),
    ] = "created_at",
    order: Annotated[
        str,
        typer.Option("--order", help=f"One of: {', '.join(ORDER_DIRECTIONS)}"),
    ] = "descending",
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Search the rule catalogue.

    Reads the catalogue only; the live firewall is not consulted.
    """
    ctx, service = get_service(verbose=verbose, no_color=no_color, config=config)
    try:
        rule_filter = RuleFilter(
            kind=RuleKind(kind.lower()) if kind else None,
            strategy=Strategy(strategy.lower()) if strategy else None,
            enabled=enabled,
            info=info,
            order_by=order_by,
            order=order,
        )
    except ValueError as e:
        handle_error(ValidationError(
            f"Invalid search filter: {e}",
            hint="Use --kind port|address and --strategy accept|drop",
        ))
        return

    try:
        result = service.search_with_page(rule_filter, page=page, page_size=page_size)
    except HostfwError as e:
        handle_error(e)
        return

    if not result.items:
        ctx.console.info(f"No rules on page {page} ({result.total} matching)")
        return

    show_rules(f"Rules (page {page}, {result.total} matching)", result.items)
