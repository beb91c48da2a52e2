"""Firewall rule model.

A Rule is the catalogue's record of one declarative port or address
directive. A RuleDescriptor is the atomic backend entry a Rule expands
into: one per address family and port range. Backends only ever see
descriptors.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, NamedTuple, Optional


class RuleKind(str, Enum):
    """Rule variant."""
    PORT = "port"
    ADDRESS = "address"


class Strategy(str, Enum):
    """Action taken on match."""
    ACCEPT = "accept"
    DROP = "drop"


class Family(str, Enum):
    """Address family."""
    IPV4 = "ipv4"
    IPV6 = "ipv6"


class Protocol(str, Enum):
    """Transport protocol."""
    TCP = "tcp"
    UDP = "udp"


class PortRange(NamedTuple):
    """Inclusive port range; start == end for a single port."""
    start: int
    end: int

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"

    @classmethod
    def parse(cls, text: str) -> "PortRange":
        """Parse "80", "80-90" or "80:90" (no validation)."""
        for sep in ("-", ":"):
            if sep in text:
                start, end = text.split(sep, 1)
                return cls(int(start), int(end))
        return cls(int(text), int(text))


def format_port_spec(ports: tuple[PortRange, ...]) -> Optional[str]:
    """Render normalized ranges as "80,443,8000-9000"."""
    if not ports:
        return None
    return ",".join(str(p) for p in ports)


@dataclass(frozen=True)
class RuleDescriptor:
    """One atomic entry in the live firewall.

    ``address`` is the matched source address (CIDR or IP), ``None``
    meaning any source of the given family.
    """
    family: Family
    strategy: Strategy
    protocol: Optional[Protocol] = None
    ports: Optional[PortRange] = None
    address: Optional[str] = None

    def _identity(self) -> tuple:
        return (
            self.family.value,
            self.protocol.value if self.protocol else "",
            self.ports or PortRange(0, 0),
            self.address or "",
        )

    def apply_order(self) -> tuple:
        """Sort key placing drops ahead of accepts."""
        return (self.strategy != Strategy.DROP,) + self._identity()

    def remove_order(self) -> tuple:
        """Sort key placing accepts ahead of drops."""
        return (self.strategy == Strategy.DROP,) + self._identity()

    def __str__(self) -> str:
        parts = [self.strategy.value.upper(), self.family.value]
        if self.protocol and self.ports:
            parts.append(f"{self.protocol.value}/{self.ports}")
        elif self.protocol:
            parts.append(self.protocol.value)
        parts.append(f"from {self.address or 'anywhere'}")
        return " ".join(parts)


@dataclass
class RuleDraft:
    """Desired rule state as submitted by a caller (not yet validated)."""
    kind: str
    strategy: str
    protocol: Optional[str] = None
    port_spec: Optional[str] = None
    address: Optional[str] = None
    source_address: Optional[str] = None
    family: Optional[str] = None
    description: Optional[str] = None
    enabled: bool = True


@dataclass
class Rule:
    """A validated, normalized firewall rule."""
    kind: RuleKind
    strategy: Strategy
    id: Optional[int] = None
    family: Optional[Family] = None
    protocol: Optional[Protocol] = None
    ports: tuple[PortRange, ...] = field(default_factory=tuple)
    address: Optional[str] = None
    source_address: Optional[str] = None
    enabled: bool = True
    description: str = ""
    divergent: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def port_spec(self) -> Optional[str]:
        """Normalized port specification text."""
        return format_port_spec(self.ports)

    def semantic_key(self) -> tuple:
        """Tuple two enabled rules of the same kind may not share."""
        protocol = self.protocol.value if self.protocol else None
        if self.kind == RuleKind.PORT:
            return (self.kind.value, protocol, self.port_spec, self.strategy.value, self.source_address)
        return (self.kind.value, self.address, self.strategy.value, protocol, self.port_spec)

    def descriptors(self) -> list[RuleDescriptor]:
        """Expand into atomic backend entries, drops first."""
        if self.kind == RuleKind.ADDRESS:
            match_address = self.address
            families = [self.family or Family.IPV4]
        else:
            match_address = self.source_address
            families = [self.family] if self.family else [Family.IPV4, Family.IPV6]

        ranges: list[Optional[PortRange]] = list(self.ports) or [None]
        return [
            RuleDescriptor(
                family=family,
                strategy=self.strategy,
                protocol=self.protocol,
                ports=port_range,
                address=match_address,
            )
            for family in families
            for port_range in ranges
        ]

    def copy(self, **changes: Any) -> "Rule":
        """Return a modified copy."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary for YAML serialization."""
        d: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "strategy": self.strategy.value,
        }
        if self.family:
            d["family"] = self.family.value
        if self.protocol:
            d["protocol"] = self.protocol.value
        if self.ports:
            d["port_spec"] = self.port_spec
        if self.address:
            d["address"] = self.address
        if self.source_address:
            d["source_address"] = self.source_address
        d["enabled"] = self.enabled
        if self.description:
            d["description"] = self.description
        if self.divergent:
            d["divergent"] = True
        d["created_at"] = self.created_at
        d["updated_at"] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Rule":
        """Create from dictionary (YAML deserialization)."""
        port_spec = d.get("port_spec")
        ports = tuple(PortRange.parse(p) for p in str(port_spec).split(",")) if port_spec else ()
        return cls(
            id=d.get("id"),
            kind=RuleKind(d["kind"]),
            strategy=Strategy(d["strategy"]),
            family=Family(d["family"]) if d.get("family") else None,
            protocol=Protocol(d["protocol"]) if d.get("protocol") else None,
            ports=ports,
            address=d.get("address"),
            source_address=d.get("source_address"),
            enabled=d.get("enabled", True),
            description=d.get("description", ""),
            divergent=d.get("divergent", False),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def __str__(self) -> str:
        """Human-readable representation."""
        parts = [self.strategy.value.upper()]
        if self.kind == RuleKind.ADDRESS:
            parts.append(self.address or "")
        if self.protocol and self.ports:
            parts.append(f"{self.protocol.value}/{self.port_spec}")
        elif self.protocol:
            parts.append(self.protocol.value)
        if self.source_address:
            parts.append(f"from {self.source_address}")
        if not self.enabled:
            parts.append("[disabled]")
        if self.id is not None:
            parts.insert(0, f"#{self.id}")
        return " ".join(parts)
