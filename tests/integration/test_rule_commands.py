"""Integration tests for the rule, batch and sync commands.

Runs the CLI against a real catalogue in tmp_path and an in-memory
firewall backend, so no root access or firewall tooling is needed.
"""

import os
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import FakeBackend
from hostfw.cli import app
from hostfw.services.firewall import FirewallService
from hostfw.services.rules import Family, PortRange, RuleDescriptor, Strategy


runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("HOSTFW_"):
            monkeypatch.delenv(name)


@pytest.fixture
def config_file(tmp_path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "catalogue_path": str(tmp_path / "rules.yaml"),
        "lock_path": str(tmp_path / "hostfw.lock"),
        "sync_on_startup": False,
        "retry_backoff": 0.001,
    }))
    return path


@pytest.fixture
def fake_backend(ctx) -> FakeBackend:
    return FakeBackend(ctx)


@pytest.fixture(autouse=True)
def patched_service(fake_backend) -> Generator[None, None, None]:
    """Build every FirewallService on the shared in-memory backend."""
    def make_service(ctx):
        return FirewallService(ctx, backend=fake_backend)

    with patch("hostfw.commands.common.FirewallService", side_effect=make_service):
        yield


def invoke(config_file, *args):
    return runner.invoke(app, list(args) + ["--config", str(config_file)])


class TestPortCommands:
    """Tests for hostfw port."""

    def test_add(self, config_file, fake_backend):
        result = invoke(config_file, "port", "add", "--port", "8080", "--description", "api")

        assert result.exit_code == 0, result.output
        assert "Created rule #1" in result.output
        assert {d.ports for d in fake_backend.active} == {PortRange(8080, 8080)}

    def test_add_invalid_port(self, config_file, fake_backend):
        result = invoke(config_file, "port", "add", "--port", "70000")

        assert result.exit_code == 3
        assert fake_backend.calls == []

    def test_add_duplicate(self, config_file):
        invoke(config_file, "port", "add", "--port", "8080")
        result = invoke(config_file, "port", "add", "--port", "8080")

        assert result.exit_code == 4
        assert "Update or delete rule 1" in result.output

    def test_update(self, config_file, fake_backend):
        invoke(config_file, "port", "add", "--port", "8080")
        result = invoke(config_file, "port", "update", "1", "--port", "9090")

        assert result.exit_code == 0, result.output
        assert {d.ports for d in fake_backend.active} == {PortRange(9090, 9090)}

    def test_update_unknown(self, config_file):
        result = invoke(config_file, "port", "update", "9", "--port", "9090")
        assert result.exit_code == 6

    def test_backend_failure_exit_code(self, config_file, fake_backend):
        fake_backend.fail("apply")
        result = invoke(config_file, "port", "add", "--port", "8080")
        assert result.exit_code == 15


class TestAddressCommands:
    """Tests for hostfw ip."""

    def test_add_and_update(self, config_file, fake_backend):
        result = invoke(config_file, "ip", "add", "--address", "203.0.113.7")
        assert result.exit_code == 0, result.output

        result = invoke(
            config_file, "ip", "update", "1", "--address", "203.0.113.0/24", "--strategy", "drop",
        )
        assert result.exit_code == 0, result.output
        assert fake_backend.active == {
            RuleDescriptor(Family.IPV4, Strategy.DROP, address="203.0.113.0/24"),
        }

    def test_update_wrong_kind(self, config_file):
        invoke(config_file, "port", "add", "--port", "22")
        result = invoke(config_file, "ip", "update", "1", "--address", "10.0.0.1")
        assert result.exit_code == 3


class TestDeleteAndSearch:
    """Tests for hostfw delete and hostfw search."""

    def test_delete(self, config_file, fake_backend):
        invoke(config_file, "port", "add", "--port", "80")
        invoke(config_file, "ip", "add", "--address", "192.0.2.1")

        result = invoke(config_file, "delete", "1", "2")

        assert result.exit_code == 0, result.output
        assert fake_backend.active == set()

    def test_delete_unknown_changes_nothing(self, config_file, fake_backend):
        invoke(config_file, "port", "add", "--port", "80")
        result = invoke(config_file, "delete", "1", "5")

        assert result.exit_code == 6
        assert len(fake_backend.active) == 2

    def test_search(self, config_file):
        invoke(config_file, "port", "add", "--port", "80", "--description", "web")
        invoke(config_file, "port", "add", "--port", "5432")

        result = invoke(config_file, "search", "--info", "web")

        assert result.exit_code == 0, result.output
        assert "1 matching" in result.output

    def test_search_empty_page(self, config_file):
        result = invoke(config_file, "search", "--page", "3")
        assert result.exit_code == 0
        assert "No rules on page 3" in result.output

    def test_search_invalid_filter(self, config_file):
        result = invoke(config_file, "search", "--kind", "service")
        assert result.exit_code == 3


class TestBatchCommand:
    """Tests for hostfw batch."""

    def write_batch(self, tmp_path, operations) -> Path:
        path = tmp_path / "batch.yaml"
        path.write_text(yaml.safe_dump({"operations": operations}))
        return path

    def test_batch_applies_all(self, config_file, tmp_path, fake_backend):
        path = self.write_batch(tmp_path, [
            {"action": "create", "kind": "port", "port": 8080, "protocol": "tcp", "strategy": "accept"},
            {"action": "create", "kind": "address", "address": "203.0.113.0/24", "strategy": "drop"},
        ])

        result = invoke(config_file, "batch", str(path))

        assert result.exit_code == 0, result.output
        assert "Batch applied: 2 operation(s)" in result.output
        assert len(fake_backend.active) == 3

    def test_batch_failure_rolls_back(self, config_file, tmp_path, fake_backend):
        path = self.write_batch(tmp_path, [
            {"action": "create", "kind": "port", "port": "8080", "protocol": "tcp", "strategy": "accept"},
            {"action": "delete", "ids": [42]},
        ])

        result = invoke(config_file, "batch", str(path))

        assert result.exit_code == 6
        assert "rolled back" in result.output
        assert fake_backend.active == set()

    def test_bare_list_accepted(self, config_file, tmp_path):
        path = tmp_path / "batch.yaml"
        path.write_text(yaml.safe_dump([
            {"action": "create", "kind": "address", "address": "192.0.2.1", "strategy": "drop"},
        ]))
        assert invoke(config_file, "batch", str(path)).exit_code == 0

    @pytest.mark.parametrize("operations", [
        [{"action": "rename", "kind": "port"}],
        [{"action": "create", "kind": "port", "port": "80"}],
        [{"action": "update", "kind": "port", "port": "80", "strategy": "accept"}],
        [{"action": "delete"}],
        [{"action": "create", "kind": "port", "strategy": "accept", "colour": "red"}],
        [],
    ])
    def test_malformed_batch_rejected(self, config_file, tmp_path, fake_backend, operations):
        path = self.write_batch(tmp_path, operations)
        result = invoke(config_file, "batch", str(path))
        assert result.exit_code == 3
        assert fake_backend.calls == []


class TestSyncCommands:
    """Tests for hostfw drift and hostfw sync."""

    def test_drift_in_sync(self, config_file):
        result = invoke(config_file, "drift")
        assert result.exit_code == 0
        assert "matches the catalogue" in result.output

    def test_drift_then_sync(self, config_file, fake_backend):
        invoke(config_file, "port", "add", "--port", "8080")
        fake_backend.active.clear()

        assert invoke(config_file, "drift").exit_code == 1

        result = invoke(config_file, "sync")
        assert result.exit_code == 0, result.output
        assert len(fake_backend.active) == 2
        assert invoke(config_file, "drift").exit_code == 0

    def test_sync_prune(self, config_file, fake_backend):
        fake_backend.active.add(RuleDescriptor(Family.IPV4, Strategy.DROP, address="198.51.100.1"))

        invoke(config_file, "sync")
        assert len(fake_backend.active) == 1

        invoke(config_file, "sync", "--prune")
        assert fake_backend.active == set()


class TestMiscCommands:
    """Tests for version and config commands."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "hostfw version" in result.output

    def test_config_init(self, tmp_path):
        path = tmp_path / "new" / "config.yaml"
        result = runner.invoke(app, ["config", "init", "--config", str(path)])
        assert result.exit_code == 0, result.output
        assert path.exists()

        result = runner.invoke(app, ["config", "init", "--config", str(path)])
        assert result.exit_code == 2

    def test_config_show(self, config_file, monkeypatch):
        monkeypatch.setenv("HOSTFW_BACKEND", "nftables")
        result = runner.invoke(app, ["config", "show", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "backend: nftables" in result.output
        assert "sync_on_startup: false" in result.output

    def test_config_show_invalid_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("backend: pf\n")
        result = runner.invoke(app, ["config", "show", "--config", str(path)])
        assert result.exit_code == 2

    def test_config_example(self):
        result = runner.invoke(app, ["config", "example"])
        assert result.exit_code == 0
        assert "prune_unexpected: false" in result.output
