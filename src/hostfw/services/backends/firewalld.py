"""firewalld backend using zone rich rules.

firewalld evaluates deny/drop rich rules before allow rules in a zone,
so drop-before-accept ordering holds without explicit positions.

Rich rules cannot carry a comment, so every parseable accept/drop rich
rule in the configured zone is reported as owned. Give hostfw a zone of
its own when other tools also write rich rules.
"""

import re
from typing import Optional

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import BackendError, ValidationError
from hostfw.core.executor import CommandExecutor
from hostfw.core.validation import canonical_address
from hostfw.services.backends.base import FirewallBackend
from hostfw.services.rules import Family, PortRange, Protocol, RuleDescriptor, Strategy


RICH_RULE_RE = re.compile(
    r'^rule\s+family="(?P<family>ipv[46])"'
    r'(?:\s+source\s+address="(?P<address>[^"]+)")?'
    r'(?:\s+port\s+port="(?P<ports>[\d-]+)"\s+protocol="(?P<port_proto>tcp|udp)")?'
    r'(?:\s+protocol\s+value="(?P<protocol>tcp|udp)")?'
    r'\s+(?P<action>accept|drop)\s*$'
)


def to_rich_rule(descriptor: RuleDescriptor) -> str:
    """Render a descriptor as a firewalld rich rule."""
    parts = [f'rule family="{descriptor.family.value}"']
    if descriptor.address:
        parts.append(f'source address="{descriptor.address}"')
    if descriptor.protocol and descriptor.ports:
        parts.append(f'port port="{descriptor.ports}" protocol="{descriptor.protocol.value}"')
    elif descriptor.protocol:
        parts.append(f'protocol value="{descriptor.protocol.value}"')
    parts.append(descriptor.strategy.value)
    return " ".join(parts)


def parse_rich_rule(line: str) -> Optional[RuleDescriptor]:
    """Parse a ``--list-rich-rules`` line, or None if hostfw cannot express it."""
    match = RICH_RULE_RE.match(line.strip())
    if not match:
        return None

    family = Family(match.group("family"))
    address = match.group("address")
    protocol = match.group("port_proto") or match.group("protocol")
    ports = match.group("ports")

    try:
        if address:
            address, _ = canonical_address(address, family.value)
        return RuleDescriptor(
            family=family,
            strategy=Strategy(match.group("action")),
            protocol=Protocol(protocol) if protocol else None,
            ports=PortRange.parse(ports) if ports else None,
            address=address,
        )
    except (ValueError, ValidationError):
        return None


class FirewalldBackend(FirewallBackend):
    """firewalld engine writing runtime rich rules to one zone."""

    name = "firewalld"

    TRANSIENT_MARKERS = (
        "busy",
        "noreply",
        "timed out",
        "timeout",
    )

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        **kwargs,
    ) -> None:
        super().__init__(ctx, executor, **kwargs)
        self.zone = ctx.config.firewalld.zone

    def _prepare(self) -> None:
        result = self._run(["firewall-cmd", "--state"], check=False, mutating=False)
        if result.return_code != 0 and not self.ctx.dry_run:
            raise BackendError(
                "firewalld is not running",
                transient=self.is_transient(result),
                stderr=result.stderr or result.stdout,
                hint="Start it with: systemctl start firewalld",
            )

    def _apply(self, descriptor: RuleDescriptor) -> None:
        rich_rule = to_rich_rule(descriptor)
        if self._exists(rich_rule):
            self.ctx.console.debug(f"Rich rule already present, skipping: {rich_rule}")
            return
        self._firewall_cmd([f"--add-rich-rule={rich_rule}"])

    def _remove(self, descriptor: RuleDescriptor) -> None:
        rich_rule = to_rich_rule(descriptor)
        if not self._exists(rich_rule):
            self.ctx.console.debug(f"Rich rule already absent, skipping: {rich_rule}")
            return
        self._firewall_cmd([f"--remove-rich-rule={rich_rule}"])

    def _list(self) -> set[RuleDescriptor]:
        if self.ctx.dry_run:
            return set()

        result = self._firewall_cmd(["--list-rich-rules"], mutating=False)
        active = set()
        for line in result.stdout.splitlines():
            descriptor = parse_rich_rule(line)
            if descriptor:
                active.add(descriptor)
        return active

    def _persist(self) -> None:
        self._run(["firewall-cmd", "--runtime-to-permanent"])

    def _exists(self, rich_rule: str) -> bool:
        if self.ctx.dry_run:
            return False
        result = self._firewall_cmd(
            [f"--query-rich-rule={rich_rule}"], check=False, mutating=False
        )
        if result.return_code == 0:
            return True
        if result.return_code == 1 or result.stdout.strip() == "no":
            return False
        # Anything else (e.g. INVALID_RULE) is a real failure
        raise BackendError(
            f"firewalld rejected rich rule: {rich_rule}",
            transient=self.is_transient(result),
            command=" ".join(result.command),
            stderr=result.stderr or result.stdout,
        )

    def _firewall_cmd(self, args: list[str], *, check: bool = True, mutating: bool = True):
        return self._run(["firewall-cmd", f"--zone={self.zone}"] + args, check=check, mutating=mutating)
