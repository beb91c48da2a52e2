"""Unit tests for input validation and rule draft validation."""

import pytest

from hostfw.core.exceptions import ValidationError
from hostfw.core.validation import (
    MAX_DESCRIPTION_LENGTH,
    canonical_address,
    parse_port_spec,
    sanitize_description,
    validate_port,
)
from hostfw.services.rules import Family, PortRange, Protocol, RuleDraft, RuleKind, Strategy
from hostfw.services.validator import validate


class TestValidatePort:
    """Tests for single port bounds."""

    @pytest.mark.parametrize("port", [1, 443, 65535])
    def test_bounds_accepted(self, port):
        assert validate_port(port) == port

    def test_port_zero_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_port(0)
        assert "Invalid port" in str(exc.value)

    def test_port_too_high_invalid(self):
        """Ports above 65535 should fail and name the field."""
        with pytest.raises(ValidationError) as exc:
            validate_port(65536, field="port_spec")
        assert exc.value.field == "port_spec"


class TestParsePortSpec:
    """Tests for port specification parsing."""

    def test_single_port(self):
        assert parse_port_spec("80") == [(80, 80)]

    def test_range_with_dash_or_colon(self):
        assert parse_port_spec("8000-9000") == [(8000, 9000)]
        assert parse_port_spec("8000:9000") == [(8000, 9000)]

    def test_degenerate_range_collapses(self):
        """'80-80' is the single port 80."""
        assert parse_port_spec("80-80") == [(80, 80)]

    def test_comma_set_sorted(self):
        assert parse_port_spec("443, 80") == [(80, 80), (443, 443)]

    def test_overlapping_and_adjacent_ranges_merge(self):
        assert parse_port_spec("80-90,85-100,101") == [(80, 101)]

    def test_reversed_range_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_port_spec("90-80")
        assert "greater than end" in str(exc.value)

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            parse_port_spec("0-80")
        with pytest.raises(ValidationError):
            parse_port_spec("70000")

    def test_garbage_rejected(self):
        with pytest.raises(ValidationError):
            parse_port_spec("http")

    def test_empty_element_rejected(self):
        with pytest.raises(ValidationError):
            parse_port_spec("80,,443")

    def test_empty_spec_rejected(self):
        with pytest.raises(ValidationError):
            parse_port_spec("  ")


class TestCanonicalAddress:
    """Tests for address canonicalization."""

    def test_host_route_collapses(self):
        assert canonical_address("10.0.0.5/32") == ("10.0.0.5", "ipv4")

    def test_host_bits_cleared(self):
        assert canonical_address("10.0.0.7/24") == ("10.0.0.0/24", "ipv4")

    def test_ipv6_compressed(self):
        assert canonical_address("2001:0db8:0000::0001") == ("2001:db8::1", "ipv6")
        assert canonical_address("2001:db8:0:0::/64") == ("2001:db8::/64", "ipv6")

    def test_family_mismatch_rejected(self):
        with pytest.raises(ValidationError) as exc:
            canonical_address("10.0.0.1", family="ipv6")
        assert "not an ipv6 address" in str(exc.value)

    def test_invalid_address_rejected(self):
        with pytest.raises(ValidationError) as exc:
            canonical_address("10.0.0.256", field="source_address")
        assert exc.value.field == "source_address"

    def test_empty_address_rejected(self):
        with pytest.raises(ValidationError):
            canonical_address("")


class TestSanitizeDescription:
    """Tests for description sanitization."""

    def test_none_becomes_empty(self):
        assert sanitize_description(None) == ""

    def test_control_characters_removed(self):
        assert "\n" not in sanitize_description("web\nserver\x00")

    def test_truncated(self):
        result = sanitize_description("x" * 500)
        assert len(result) == MAX_DESCRIPTION_LENGTH
        assert result.endswith("...")


class TestValidatePortRule:
    """Tests for validating port rule drafts."""

    def test_normalizes_port_rule(self):
        rule = validate(RuleDraft(
            kind="port", strategy="ACCEPT", protocol="TCP", port_spec="443,80-80",
        ))
        assert rule.kind == RuleKind.PORT
        assert rule.strategy == Strategy.ACCEPT
        assert rule.protocol == Protocol.TCP
        assert rule.ports == (PortRange(80, 80), PortRange(443, 443))
        assert rule.port_spec == "80,443"
        assert rule.family is None
        assert rule.id is None

    def test_source_address_pins_family(self):
        rule = validate(RuleDraft(
            kind="port", strategy="accept", protocol="tcp", port_spec="22",
            source_address="2001:db8::1/128",
        ))
        assert rule.source_address == "2001:db8::1"
        assert rule.family == Family.IPV6

    def test_port_rule_requires_port_spec(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="port", strategy="accept", protocol="tcp", source_address="10.0.0.1"))
        assert exc.value.field == "port_spec"

    def test_port_spec_requires_protocol(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="port", strategy="accept", port_spec="80"))
        assert exc.value.field == "protocol"

    def test_port_rule_rejects_address(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(
                kind="port", strategy="accept", protocol="tcp", port_spec="80", address="10.0.0.1",
            ))
        assert exc.value.field == "address"

    def test_empty_draft_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="port", strategy="accept", protocol="tcp"))
        assert "port specification or an address" in str(exc.value)

    def test_invalid_strategy(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="port", strategy="reject", protocol="tcp", port_spec="80"))
        assert exc.value.field == "strategy"
        assert "accept" in exc.value.hint

    def test_invalid_protocol(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="port", strategy="accept", protocol="icmp", port_spec="80"))
        assert exc.value.field == "protocol"

    def test_description_sanitized(self):
        rule = validate(RuleDraft(
            kind="port", strategy="accept", protocol="tcp", port_spec="80",
            description="web\tserver",
        ))
        assert rule.description == "web server"


class TestValidateAddressRule:
    """Tests for validating address rule drafts."""

    def test_family_inferred(self):
        rule = validate(RuleDraft(kind="address", strategy="drop", address="10.0.0.7/24"))
        assert rule.address == "10.0.0.0/24"
        assert rule.family == Family.IPV4
        assert rule.ports == ()

    def test_declared_family_must_match(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="address", strategy="drop", address="10.0.0.1", family="ipv6"))
        assert exc.value.field == "address"

    def test_scoped_by_protocol_and_ports(self):
        rule = validate(RuleDraft(
            kind="address", strategy="accept", address="192.168.1.10",
            protocol="udp", port_spec="53",
        ))
        assert rule.protocol == Protocol.UDP
        assert rule.port_spec == "53"

    def test_scoping_ports_require_protocol(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="address", strategy="accept", address="10.0.0.1", port_spec="22"))
        assert exc.value.field == "protocol"

    def test_address_rule_rejects_source_address(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(
                kind="address", strategy="drop", address="10.0.0.1", source_address="10.0.0.2",
            ))
        assert exc.value.field == "source_address"

    def test_invalid_kind(self):
        with pytest.raises(ValidationError) as exc:
            validate(RuleDraft(kind="service", strategy="drop", address="10.0.0.1"))
        assert exc.value.field == "kind"
