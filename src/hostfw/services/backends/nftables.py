"""nftables backend using an owned ``inet`` table.

hostfw keeps its rules in table ``inet hostfw`` (chain ``input`` hooked
at priority -10), so it never edits tables other tools manage. Drop
rules are inserted at the head of the chain and accept rules appended.
Persistence renders the live chain into a ruleset file that replaces
the table atomically when loaded with ``nft -f``.
"""

import re
import shlex
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import BackendError, ValidationError
from hostfw.core.executor import CommandExecutor
from hostfw.core.validation import canonical_address
from hostfw.services.backends.base import OWNER_TAG, FirewallBackend
from hostfw.services.catalogue import utcnow
from hostfw.services.rules import Family, PortRange, Protocol, RuleDescriptor, Strategy


HANDLE_RE = re.compile(r"\s+#\s+handle\s+(\d+)\s*$")

ADDRESS_MATCH = {
    Family.IPV4: "ip",
    Family.IPV6: "ip6",
}


def to_nft_expression(descriptor: RuleDescriptor) -> str:
    """Render a descriptor as an nft rule expression."""
    parts = []
    if descriptor.address:
        parts.append(f"{ADDRESS_MATCH[descriptor.family]} saddr {descriptor.address}")
    else:
        parts.append(f"meta nfproto {descriptor.family.value}")

    if descriptor.protocol and descriptor.ports:
        parts.append(f"{descriptor.protocol.value} dport {descriptor.ports}")
    elif descriptor.protocol:
        parts.append(f"meta l4proto {descriptor.protocol.value}")

    parts.append(descriptor.strategy.value)
    parts.append(f'comment "{OWNER_TAG}"')
    return " ".join(parts)


def parse_nft_rule(line: str) -> tuple[Optional[RuleDescriptor], Optional[int]]:
    """Parse one rule line of ``nft -a list chain`` output.

    Example line:
        ip saddr 10.0.0.0/8 tcp dport 80-90 accept comment "hostfw" # handle 7

    Returns:
        (descriptor, handle); descriptor is None for entries hostfw
        does not own or cannot express
    """
    handle = None
    match = HANDLE_RE.search(line)
    if match:
        handle = int(match.group(1))
        line = line[:match.start()]

    try:
        tokens = shlex.split(line)
    except ValueError:
        return None, handle

    family = None
    address = None
    protocol = None
    ports = None
    verdict = None
    comment = None

    i = 0
    while i < len(tokens):
        token = tokens[i]
        rest = tokens[i + 1:]
        if token in ("ip", "ip6") and rest[:1] == ["saddr"] and len(rest) > 1:
            family = Family.IPV4 if token == "ip" else Family.IPV6
            address = rest[1]
            i += 3
        elif token == "meta" and len(rest) > 1 and rest[0] == "nfproto":
            family = Family(rest[1])
            i += 3
        elif token == "meta" and len(rest) > 1 and rest[0] == "l4proto":
            protocol = rest[1]
            i += 3
        elif token in ("tcp", "udp") and rest[:1] == ["dport"] and len(rest) > 1:
            protocol = token
            ports = rest[1]
            i += 3
        elif token in ("accept", "drop"):
            verdict = token
            i += 1
        elif token == "comment" and rest:
            comment = rest[0]
            i += 2
        else:
            return None, handle

    if comment != OWNER_TAG or verdict is None or family is None:
        return None, handle

    try:
        if address:
            address, _ = canonical_address(address, family.value)
        descriptor = RuleDescriptor(
            family=family,
            strategy=Strategy(verdict),
            protocol=Protocol(protocol) if protocol else None,
            ports=PortRange.parse(ports) if ports else None,
            address=address,
        )
    except (ValueError, ValidationError):
        return None, handle
    return descriptor, handle


class NftablesBackend(FirewallBackend):
    """nftables engine with a dedicated table and chain."""

    name = "nftables"

    TRANSIENT_MARKERS = (
        "resource busy",
        "resource temporarily unavailable",
        "try again",
    )

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        **kwargs,
    ) -> None:
        super().__init__(ctx, executor, **kwargs)
        settings = ctx.config.nftables
        self.table = settings.table
        self.chain = settings.chain
        self.priority = settings.priority
        self.ruleset_path = settings.ruleset_path

        self._jinja_env = Environment(
            loader=PackageLoader("hostfw", "templates"),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    # =========================================================================
    # Primitives
    # =========================================================================

    def _prepare(self) -> None:
        # "add" is a no-op when the table or chain already exists
        self._nft(["add", "table", "inet", self.table])
        self._nft([
            "add", "chain", "inet", self.table, self.chain,
            f"{{ type filter hook input priority {self.priority} ; policy accept ; }}",
        ])

    def _apply(self, descriptor: RuleDescriptor) -> None:
        if descriptor in self._handles():
            self.ctx.console.debug(f"Rule already present, skipping: {descriptor}")
            return

        verb = "insert" if descriptor.strategy == Strategy.DROP else "add"
        self._nft([verb, "rule", "inet", self.table, self.chain, to_nft_expression(descriptor)])

    def _remove(self, descriptor: RuleDescriptor) -> None:
        handle = self._handles().get(descriptor)
        if handle is None:
            self.ctx.console.debug(f"Rule already absent, skipping: {descriptor}")
            return
        self._nft(["delete", "rule", "inet", self.table, self.chain, "handle", str(handle)])

    def _list(self) -> set[RuleDescriptor]:
        return set(self._handles())

    def _persist(self) -> None:
        rules = [to_nft_expression(d) for d in self._handles()]
        template = self._jinja_env.get_template("nftables.conf.j2")
        content = template.render(
            table=self.table,
            chain=self.chain,
            priority=self.priority,
            rules=rules,
            generated_at=utcnow(),
        )
        self._write_saved_rules(
            self.ruleset_path,
            content,
            f"Saving nftables ruleset to {self.ruleset_path}",
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _handles(self) -> dict[RuleDescriptor, int]:
        """Map owned descriptors to their rule handles, in chain order."""
        if self.ctx.dry_run:
            return {}

        result = self._nft(
            ["-a", "list", "chain", "inet", self.table, self.chain],
            check=False,
            mutating=False,
        )
        if result.return_code != 0:
            if "no such file or directory" in result.stderr.lower():
                return {}
            raise BackendError(
                f"Cannot list nftables chain {self.table}/{self.chain}",
                transient=self.is_transient(result),
                stderr=result.stderr,
            )

        handles: dict[RuleDescriptor, int] = {}
        for line in result.stdout.splitlines():
            descriptor, handle = parse_nft_rule(line.strip())
            if descriptor is not None and handle is not None:
                handles.setdefault(descriptor, handle)
        return handles

    def _nft(self, args: list[str], *, check: bool = True, mutating: bool = True):
        return self._run(["nft"] + args, check=check, mutating=mutating)
