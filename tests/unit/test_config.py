"""Unit tests for configuration loading."""

import os

import pytest
import yaml

from hostfw.core.config import HostfwConfig, get_example_config, init_config
from hostfw.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("HOSTFW_"):
            monkeypatch.delenv(name)


class TestHostfwConfig:
    """Tests for HostfwConfig."""

    def test_defaults(self):
        config = HostfwConfig.from_dict({})
        assert config.backend == "iptables"
        assert config.iptables.chain == "HOSTFW"
        assert config.nftables.priority == -10
        assert config.sync_on_startup is True
        assert config.prune_unexpected is False

    def test_backend_normalized(self):
        assert HostfwConfig.from_dict({"backend": " NFTables "}).backend == "nftables"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            HostfwConfig.from_dict({"backend": "pf"})
        assert "backend must be one of" in str(exc.value)

    @pytest.mark.parametrize("data", [
        {"retry_attempts": 0},
        {"compensation_attempts": 11},
        {"command_timeout": 0},
        {"iptables": {"chain": "a chain with spaces"}},
    ])
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ConfigurationError):
            HostfwConfig.from_dict(data)

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            HostfwConfig.from_dict(["backend", "iptables"])

    def test_environment_overrides_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOSTFW_BACKEND", "firewalld")
        monkeypatch.setenv("HOSTFW_CATALOGUE_PATH", str(tmp_path / "rules.yaml"))
        config = HostfwConfig.from_dict({"backend": "nftables"})
        assert config.backend == "firewalld"
        assert config.catalogue_path == tmp_path / "rules.yaml"

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("backend: nftables\nnftables:\n  table: edge\n")
        config = HostfwConfig.load(path)
        assert config.backend == "nftables"
        assert config.nftables.table == "edge"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc:
            HostfwConfig.load(tmp_path / "missing.yaml")
        assert "hostfw config init" in exc.value.hint

    def test_load_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("backend: [iptables\n")
        with pytest.raises(ConfigurationError) as exc:
            HostfwConfig.load(path)
        assert "Invalid YAML" in exc.value.message

    def test_load_or_default_without_file(self, tmp_path):
        config = HostfwConfig.load_or_default(tmp_path / "missing.yaml")
        assert config.backend == "iptables"

    def test_to_yaml(self):
        data = yaml.safe_load(HostfwConfig.from_dict({"backend": "firewalld"}).to_yaml())
        assert data["backend"] == "firewalld"
        assert data["firewalld"]["zone"] == "public"


class TestInitConfig:
    """Tests for config file creation."""

    def test_example_is_valid(self):
        config = HostfwConfig.from_dict(yaml.safe_load(get_example_config()))
        assert config.backend == "iptables"

    def test_creates_private_file(self, tmp_path):
        path = tmp_path / "etc" / "config.yaml"
        init_config(path)
        assert path.read_text() == get_example_config()
        assert oct(os.stat(path).st_mode & 0o777) == "0o600"

    def test_refuses_to_overwrite(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("backend: nftables\n")
        with pytest.raises(ConfigurationError):
            init_config(path)
        init_config(path, force=True)
        assert "backend: iptables" in path.read_text()
