"""Unit tests for FirewallService."""

import pytest

from conftest import FakeBackend, address_draft, port_draft
from hostfw.core.exceptions import BackendError, ConflictError
from hostfw.core.locking import HostLock
from hostfw.services.catalogue import RuleCatalogue
from hostfw.services.firewall import FirewallService
from hostfw.services.reconciler import CreateAddress
from hostfw.services.rules import Family, PortRange, RuleDescriptor, RuleKind, Strategy
from hostfw.services.search import RuleFilter


@pytest.fixture
def service(ctx, backend):
    return FirewallService(ctx, backend=backend)


class TestFirewallService:
    """End-to-end flows through the service with an in-memory backend."""

    def test_port_rule_lifecycle(self, service, backend):
        rule = service.operate_port_rule(port_draft("8080", description="api"))
        assert rule.id == 1
        assert {d.ports for d in backend.active} == {PortRange(8080, 8080)}

        found = service.search_with_page(RuleFilter(info="api"))
        assert [r.id for r in found.items] == [1]

        updated = service.update_port_rule(1, port_draft("9090", description="api"))
        assert updated.port_spec == "9090"
        assert {d.ports for d in backend.active} == {PortRange(9090, 9090)}

        deleted = service.batch_delete_rule([1])
        assert [r.id for r in deleted] == [1]
        assert backend.active == set()
        assert service.search_with_page().total == 0

    def test_address_rule_lifecycle(self, service, backend):
        rule = service.operate_address_rule(address_draft("192.0.2.10/32"))
        assert rule.address == "192.0.2.10"

        updated = service.update_addr_rule(rule.id, address_draft("192.0.2.0/24"))
        assert updated.address == "192.0.2.0/24"
        assert [d.address for d in backend.active] == ["192.0.2.0/24"]

    def test_conflict_surfaces(self, service):
        service.operate_port_rule(port_draft())
        with pytest.raises(ConflictError):
            service.operate_port_rule(port_draft())

    def test_batch(self, service):
        result = service.batch_operate_rule([
            CreateAddress(address_draft("10.0.0.0/8", strategy="accept")),
            CreateAddress(address_draft("10.0.0.5")),
        ])
        assert result.success
        found = service.search_with_page(RuleFilter(kind=RuleKind.ADDRESS, strategy=Strategy.DROP))
        assert [r.address for r in found.items] == ["10.0.0.5"]

    def test_sync_uses_configured_prune(self, service, backend, config):
        stray = RuleDescriptor(Family.IPV4, Strategy.DROP, address="198.51.100.1")
        backend.active.add(stray)

        assert service.sync().pruned == []
        config.prune_unexpected = True
        assert service.sync().pruned == [stray]

    def test_detect_drift(self, service, backend):
        service.operate_port_rule(port_draft())
        backend.active.clear()
        assert len(service.detect_drift().missing) == 2


class TestStartupSync:
    """Tests for the sync run before the first mutation."""

    @pytest.fixture
    def startup_config(self, config):
        config.sync_on_startup = True
        return config

    def test_missing_rules_reapplied_before_first_change(self, ctx, startup_config):
        first = FirewallService(ctx, backend=FakeBackend(ctx))
        first.operate_port_rule(port_draft("80"))

        # Simulates a reboot that lost the runtime rules
        rebooted = FakeBackend(ctx)
        service = FirewallService(ctx, backend=rebooted)
        service.operate_address_rule(address_draft("203.0.113.9"))

        assert {d.ports for d in rebooted.active if d.ports} == {PortRange(80, 80)}
        assert len(rebooted.active) == 3
        assert rebooted.persist_count == 2

    def test_runs_once(self, ctx, startup_config):
        backend = FakeBackend(ctx)
        service = FirewallService(ctx, backend=backend)
        service.operate_port_rule(port_draft("80"))
        backend.active.clear()
        service.operate_port_rule(port_draft("81"))

        assert {d.ports for d in backend.active} == {PortRange(81, 81)}

    def test_failure_blocks_mutation(self, ctx, startup_config, catalogue):
        backend = FakeBackend(ctx)
        backend.fail("list")
        service = FirewallService(ctx, backend=backend, catalogue=catalogue)

        with pytest.raises(BackendError) as exc:
            service.operate_port_rule(port_draft())

        assert "hostfw sync" in exc.value.hint
        assert len(catalogue) == 0

    def test_search_does_not_sync(self, ctx, startup_config):
        backend = FakeBackend(ctx)
        backend.fail("list")
        service = FirewallService(ctx, backend=backend)
        assert service.search_with_page().total == 0

    def test_disabled(self, ctx, backend):
        service = FirewallService(ctx, backend=backend)
        backend.fail("list")
        service.operate_port_rule(port_draft())
        assert len(backend.active) == 2


class TestSharedCatalogue:
    """Two services on one host, as two hostfw processes would be."""

    @pytest.fixture
    def services(self, ctx, config):
        backend = FakeBackend(ctx)
        first = FirewallService(ctx, backend=backend, lock=HostLock(config.lock_path))
        second = FirewallService(ctx, backend=backend, lock=HostLock(config.lock_path))
        return first, second

    def test_ids_stay_unique(self, ctx, services):
        first, second = services
        assert second.search_with_page().total == 0

        a = first.operate_port_rule(port_draft("80"))
        b = second.operate_port_rule(port_draft("443"))

        assert (a.id, b.id) == (1, 2)
        assert [r.port_spec for r in RuleCatalogue(ctx).all()] == ["80", "443"]

    def test_conflict_seen_across_services(self, services):
        first, second = services
        second.search_with_page()
        first.operate_port_rule(port_draft("80"))

        with pytest.raises(ConflictError):
            second.operate_port_rule(port_draft("80"))

    def test_batch_sees_other_service_rules(self, ctx, services):
        first, second = services
        second.search_with_page()
        first.operate_port_rule(port_draft("80"))

        result = second.batch_operate_rule([CreateAddress(address_draft("10.0.0.5"))])

        assert result.success
        assert [r.id for r in RuleCatalogue(ctx).all()] == [1, 2]
