"""Input validation utilities.

Provides validation and canonicalization for:
- Port numbers and port specifications (single, range, comma set)
- IP addresses and CIDR networks
- Free-text descriptions

All validators return the validated value or raise ValidationError.
"""

import ipaddress
import re
from typing import Optional

from hostfw.core.exceptions import ValidationError


MIN_PORT = 1
MAX_PORT = 65535
MAX_DESCRIPTION_LENGTH = 256

PORT_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:[-:]\s*(\d+)\s*)?$")


def validate_port(value: int, field: str = "port") -> int:
    """Validate a port number.

    Args:
        value: Port number to validate
        field: Draft field name used in the error

    Returns:
        The validated port number

    Raises:
        ValidationError: If port is out of valid range
    """
    if not MIN_PORT <= value <= MAX_PORT:
        raise ValidationError(
            f"Invalid port number: {value}",
            field=field,
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )
    return value


def parse_port_spec(spec: str, field: str = "port_spec") -> list[tuple[int, int]]:
    """Parse and canonicalize a port specification.

    Accepts a single port ("80"), a range ("8000-9000" or "8000:9000")
    or a comma separated mix of both. Overlapping and adjacent ranges
    are merged.

    Args:
        spec: Port specification text
        field: Draft field name used in errors

    Returns:
        Ordered list of disjoint (start, end) tuples

    Raises:
        ValidationError: If any element is malformed or out of range
    """
    if spec is None or not str(spec).strip():
        raise ValidationError("Port specification is empty", field=field)

    ranges: list[tuple[int, int]] = []
    for element in str(spec).split(","):
        if not element.strip():
            raise ValidationError(
                f"Empty element in port specification: '{spec}'",
                field=field,
                hint="Use a format like 80,443,8000-9000",
            )
        match = PORT_RANGE_PATTERN.match(element)
        if not match:
            raise ValidationError(
                f"Invalid port or port range: '{element.strip()}'",
                field=field,
                hint="Use a format like 80,443,8000-9000",
            )
        start = validate_port(int(match.group(1)), field)
        end = validate_port(int(match.group(2)), field) if match.group(2) else start
        if start > end:
            raise ValidationError(
                f"Port range start is greater than end: '{element.strip()}'",
                field=field,
                hint=f"Write it as {end}-{start}",
            )
        ranges.append((start, end))

    ranges.sort()
    merged: list[tuple[int, int]] = [ranges[0]]
    for start, end in ranges[1:]:
        last_start, last_end = merged[-1]
        if start <= last_end + 1:
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def canonical_address(
    value: str,
    family: Optional[str] = None,
    field: str = "address",
) -> tuple[str, str]:
    """Canonicalize an IP address or CIDR to its minimal form.

    Host routes collapse to the bare address ("10.0.0.5/32" -> "10.0.0.5"),
    host bits are cleared ("10.0.0.7/24" -> "10.0.0.0/24") and IPv6 is
    compressed.

    Args:
        value: IP or CIDR text
        family: Expected family ("ipv4"/"ipv6"), inferred when None
        field: Draft field name used in errors

    Returns:
        Tuple of (canonical address, family)

    Raises:
        ValidationError: If the address is invalid or of another family
    """
    text = (value or "").strip()
    if not text:
        raise ValidationError("Address is empty", field=field)

    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError as e:
        raise ValidationError(
            f"Invalid IP address or CIDR: {text}",
            field=field,
            hint="Use a format like 192.168.1.10, 10.0.0.0/8 or 2001:db8::/32",
            details=[str(e)],
        ) from e

    actual = "ipv4" if network.version == 4 else "ipv6"
    if family and family != actual:
        raise ValidationError(
            f"Address {text} is not an {family} address",
            field=field,
            hint=f"Set family to {actual} or use an {family} address",
        )

    if network.prefixlen == network.max_prefixlen:
        return str(network.network_address), actual
    return network.with_prefixlen, actual


def sanitize_description(description: Optional[str]) -> str:
    """Sanitize free text for storage and backend comments.

    Args:
        description: Text to sanitize

    Returns:
        Sanitized text ("" when None)
    """
    if not description:
        return ""

    sanitized = re.sub(r"[\x00-\x1f\x7f]", " ", description)

    if len(sanitized) > MAX_DESCRIPTION_LENGTH:
        sanitized = sanitized[:MAX_DESCRIPTION_LENGTH - 3] + "..."

    return sanitized.strip()
