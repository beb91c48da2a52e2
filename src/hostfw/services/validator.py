"""Semantic validation and normalization of rule drafts.

``validate`` is a pure function: it returns a normalized Rule (without
id or timestamps) or raises ValidationError naming the failing field.
"""

from enum import Enum
from typing import Optional, TypeVar

from hostfw.core.exceptions import ValidationError
from hostfw.core.validation import canonical_address, parse_port_spec, sanitize_description
from hostfw.services.rules import (
    Family,
    PortRange,
    Protocol,
    Rule,
    RuleDraft,
    RuleKind,
    Strategy,
)


E = TypeVar("E", bound=Enum)


def _parse_choice(enum_cls: type[E], value: Optional[str], field: str) -> E:
    """Parse a case-insensitive enum value."""
    valid = ", ".join(m.value for m in enum_cls)
    if value is None or not str(value).strip():
        raise ValidationError(
            f"Missing {field}",
            field=field,
            hint=f"Valid values: {valid}",
        )
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {value}",
            field=field,
            hint=f"Valid values: {valid}",
        )


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate(draft: RuleDraft) -> Rule:
    """Validate and normalize a rule draft.

    Args:
        draft: Desired rule state

    Returns:
        Normalized Rule (id and timestamps unset)

    Raises:
        ValidationError: If any field is invalid
    """
    if _blank(draft.port_spec) and _blank(draft.address):
        raise ValidationError(
            "Rule needs a port specification or an address",
            field="port_spec",
        )

    kind = _parse_choice(RuleKind, draft.kind, "kind")
    strategy = _parse_choice(Strategy, draft.strategy, "strategy")
    family = None if _blank(draft.family) else _parse_choice(Family, draft.family, "family")
    protocol = None if _blank(draft.protocol) else _parse_choice(Protocol, draft.protocol, "protocol")

    ports: tuple[PortRange, ...] = ()
    if not _blank(draft.port_spec):
        ports = tuple(PortRange(s, e) for s, e in parse_port_spec(str(draft.port_spec)))
        if protocol is None:
            raise ValidationError(
                "A port specification requires a protocol",
                field="protocol",
                hint="Valid values: tcp, udp",
            )

    address = None
    source_address = None

    if kind == RuleKind.PORT:
        if not ports:
            raise ValidationError("Port rules require a port specification", field="port_spec")
        if not _blank(draft.address):
            raise ValidationError(
                "Port rules scope by source_address, not address",
                field="address",
                hint="Create an address rule or use source_address",
            )
        if not _blank(draft.source_address):
            source_address, family = canonical_address(
                draft.source_address, family.value if family else None, "source_address"
            )
            family = Family(family)
    else:
        if _blank(draft.address):
            raise ValidationError("Address rules require an address", field="address")
        if not _blank(draft.source_address):
            raise ValidationError(
                "Address rules match on address; source_address is not allowed",
                field="source_address",
            )
        address, inferred = canonical_address(
            draft.address, family.value if family else None, "address"
        )
        family = Family(inferred)

    return Rule(
        kind=kind,
        strategy=strategy,
        family=family,
        protocol=protocol,
        ports=ports,
        address=address,
        source_address=source_address,
        enabled=bool(draft.enabled),
        description=sanitize_description(draft.description),
    )
