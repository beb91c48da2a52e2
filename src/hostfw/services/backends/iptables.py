"""iptables/ip6tables backend.

All hostfw entries live in a dedicated chain (HOSTFW by default) that the
INPUT chain jumps to. Drop entries are inserted at the head of that chain
and accept entries appended, so a drop is always evaluated first.
Entries carry an ``-m comment --comment hostfw`` tag.
"""

import shlex
from typing import Optional

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import BackendError, ValidationError
from hostfw.core.executor import CommandExecutor
from hostfw.core.validation import canonical_address
from hostfw.services.backends.base import OWNER_TAG, FirewallBackend
from hostfw.services.rules import Family, PortRange, Protocol, RuleDescriptor, Strategy


# Seconds iptables waits for the xtables lock before giving up
XTABLES_WAIT = "2"

BINARIES = {
    Family.IPV4: ("iptables", "iptables-save"),
    Family.IPV6: ("ip6tables", "ip6tables-save"),
}

TARGETS = {
    Strategy.ACCEPT: "ACCEPT",
    Strategy.DROP: "DROP",
}


def to_iptables_args(descriptor: RuleDescriptor) -> list[str]:
    """Convert a descriptor to iptables match/target arguments."""
    args = []

    if descriptor.address:
        args.extend(["-s", descriptor.address])

    if descriptor.protocol:
        args.extend(["-p", descriptor.protocol.value])

    if descriptor.protocol and descriptor.ports:
        port = descriptor.ports
        dport = str(port.start) if port.start == port.end else f"{port.start}:{port.end}"
        args.extend(["-m", descriptor.protocol.value, "--dport", dport])

    args.extend(["-m", "comment", "--comment", OWNER_TAG])
    args.extend(["-j", TARGETS[descriptor.strategy]])
    return args


def parse_rule_spec(line: str, chain: str, family: Family) -> Optional[RuleDescriptor]:
    """Parse one ``iptables -S`` line back into a descriptor.

    Example line:
        -A HOSTFW -s 10.0.0.0/8 -p tcp -m tcp --dport 80:90 -m comment --comment hostfw -j ACCEPT

    Returns:
        RuleDescriptor, or None for lines hostfw does not own
    """
    try:
        tokens = shlex.split(line)
    except ValueError:
        return None
    if len(tokens) < 2 or tokens[0] != "-A" or tokens[1] != chain:
        return None

    address = None
    protocol = None
    ports = None
    comment = None
    target = None

    i = 2
    while i < len(tokens):
        token = tokens[i]
        value = tokens[i + 1] if i + 1 < len(tokens) else None
        if token == "-s":
            address = value
        elif token == "-p":
            protocol = value
        elif token == "--dport":
            ports = value
        elif token == "--comment":
            comment = value
        elif token == "-j":
            target = value
        elif token == "-m":
            pass
        else:
            # Any other match means the entry was not written by hostfw
            if token.startswith("-"):
                return None
            i += 1
            continue
        i += 2

    if comment != OWNER_TAG or target not in ("ACCEPT", "DROP"):
        return None

    try:
        if address:
            address, _ = canonical_address(address, family.value)
            if address in ("0.0.0.0/0", "::/0"):
                address = None
        return RuleDescriptor(
            family=family,
            strategy=Strategy(target.lower()),
            protocol=Protocol(protocol) if protocol else None,
            ports=PortRange.parse(ports) if ports else None,
            address=address,
        )
    except (ValueError, ValidationError):
        return None


class IptablesBackend(FirewallBackend):
    """iptables/ip6tables engine using a dedicated chain."""

    name = "iptables"

    TRANSIENT_MARKERS = (
        "xtables lock",
        "resource temporarily unavailable",
        "another app is currently holding",
    )

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        **kwargs,
    ) -> None:
        super().__init__(ctx, executor, **kwargs)
        settings = ctx.config.iptables
        self.chain = settings.chain
        self.parent_chain = settings.parent_chain
        self.save_paths = {
            Family.IPV4: settings.rules_v4,
            Family.IPV6: settings.rules_v6,
        }

    # =========================================================================
    # Primitives
    # =========================================================================

    def _prepare(self) -> None:
        for family in (Family.IPV4, Family.IPV6):
            if self._iptables(family, ["-L", self.chain, "-n"], check=False, mutating=False).return_code != 0:
                self.ctx.console.step(f"Creating {family.value} chain {self.chain}")
                self._iptables(family, ["-N", self.chain])

            jump = ["-j", self.chain]
            if self._iptables(family, ["-C", self.parent_chain] + jump, check=False, mutating=False).return_code != 0:
                self._iptables(family, ["-I", self.parent_chain, "1"] + jump)

    def _apply(self, descriptor: RuleDescriptor) -> None:
        if self._exists(descriptor):
            self.ctx.console.debug(f"Rule already present, skipping: {descriptor}")
            return

        args = to_iptables_args(descriptor)
        if descriptor.strategy == Strategy.DROP:
            self._iptables(descriptor.family, ["-I", self.chain, "1"] + args)
        else:
            self._iptables(descriptor.family, ["-A", self.chain] + args)

    def _remove(self, descriptor: RuleDescriptor) -> None:
        if not self._exists(descriptor):
            self.ctx.console.debug(f"Rule already absent, skipping: {descriptor}")
            return
        self._iptables(descriptor.family, ["-D", self.chain] + to_iptables_args(descriptor))

    def _list(self) -> set[RuleDescriptor]:
        if self.ctx.dry_run:
            return set()

        active = set()
        for family in (Family.IPV4, Family.IPV6):
            result = self._iptables(family, ["-S", self.chain], check=False, mutating=False)
            if result.return_code != 0:
                if "no chain" in result.stderr.lower():
                    continue
                raise BackendError(
                    f"Cannot list {family.value} rules in chain {self.chain}",
                    transient=self.is_transient(result),
                    stderr=result.stderr,
                )
            for line in result.stdout.splitlines():
                descriptor = parse_rule_spec(line, self.chain, family)
                if descriptor:
                    active.add(descriptor)
        return active

    def _persist(self) -> None:
        for family, (_, save_binary) in BINARIES.items():
            result = self._run([save_binary], mutating=False)
            self._write_saved_rules(
                self.save_paths[family],
                result.stdout,
                f"Saving {family.value} rules to {self.save_paths[family]}",
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _exists(self, descriptor: RuleDescriptor) -> bool:
        """Check with ``-C`` whether an identical entry is present."""
        if self.ctx.dry_run:
            return False

        result = self._iptables(
            descriptor.family,
            ["-C", self.chain] + to_iptables_args(descriptor),
            check=False,
            mutating=False,
        )
        if result.return_code == 0:
            return True
        if result.return_code == 1 or "does a matching rule exist" in result.stderr.lower():
            return False
        raise BackendError(
            f"iptables rejected rule {descriptor}",
            transient=self.is_transient(result),
            stderr=result.stderr,
        )

    def _iptables(
        self,
        family: Family,
        args: list[str],
        *,
        check: bool = True,
        mutating: bool = True,
    ):
        binary = BINARIES[family][0]
        return self._run([binary, "-w", XTABLES_WAIT] + args, check=check, mutating=mutating)
