"""hostfw settings.

One YAML file per host (default /etc/hostfw/config.yaml) validated by
pydantic models. A handful of top-level keys can be overridden with
HOSTFW_* environment variables for one-off runs.
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from hostfw.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/hostfw/config.yaml")
DEFAULT_CATALOGUE_PATH = Path("/var/lib/hostfw/rules.yaml")
DEFAULT_LOCK_PATH = Path("/run/hostfw.lock")

BACKEND_NAMES = ("iptables", "firewalld", "nftables")


class IptablesConfig(BaseModel):
    """iptables/ip6tables backend settings."""

    chain: str = "HOSTFW"
    parent_chain: str = "INPUT"
    rules_v4: Path = Path("/etc/iptables/rules.v4")
    rules_v6: Path = Path("/etc/iptables/rules.v6")

    @field_validator("chain")
    @classmethod
    def validate_chain(cls, v: str) -> str:
        if not v or len(v) > 28 or " " in v:
            raise ValueError("chain must be 1-28 characters without spaces")
        return v


class FirewalldConfig(BaseModel):
    """firewalld backend settings."""

    zone: str = "public"


class NftablesConfig(BaseModel):
    """nftables backend settings."""

    table: str = "hostfw"
    chain: str = "input"
    priority: int = -10
    ruleset_path: Path = Path("/etc/nftables.d/hostfw.nft")


class HostfwConfig(BaseModel):
    """Root configuration model for a single host.

    Loaded from /etc/hostfw/config.yaml, then overridden by HOSTFW_*
    environment variables.
    """

    backend: str = "iptables"
    catalogue_path: Path = DEFAULT_CATALOGUE_PATH
    lock_path: Path = DEFAULT_LOCK_PATH

    command_timeout: float = 5.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    compensation_attempts: int = 3

    sync_on_startup: bool = True
    prune_unexpected: bool = False

    iptables: IptablesConfig = Field(default_factory=IptablesConfig)
    firewalld: FirewalldConfig = Field(default_factory=FirewalldConfig)
    nftables: NftablesConfig = Field(default_factory=NftablesConfig)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in BACKEND_NAMES:
            raise ValueError(f"backend must be one of: {list(BACKEND_NAMES)}")
        return v

    @field_validator("command_timeout", "retry_backoff")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("retry_attempts", "compensation_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("attempts must be between 1 and 10")
        return v

    @classmethod
    def load(cls, path: Path) -> "HostfwConfig":
        """Read ``path`` and apply environment overrides.

        Raises ConfigurationError when the file is missing, unreadable,
        not YAML, or holds invalid values.
        """
        try:
            raw = path.read_text()
        except FileNotFoundError:
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: hostfw config init",
            )
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Run hostfw as root or fix the file mode",
            )

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}", details=[str(e)]) from e
        return cls.from_dict(data if data is not None else {})

    @classmethod
    def from_dict(cls, data: dict) -> "HostfwConfig":
        """Validate a mapping, letting HOSTFW_* variables take precedence."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a YAML mapping")

        try:
            return cls.model_validate({**data, **EnvOverrides().as_dict()})
        except PydanticValidationError as e:
            problems = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(problems),
                details=problems,
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "HostfwConfig":
        """Like ``load``, but a missing file means built-in defaults."""
        path = path or DEFAULT_CONFIG_PATH
        return cls.load(path) if path.exists() else cls.from_dict({})

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), default_flow_style=False, sort_keys=False)


class EnvOverrides(BaseSettings):
    """Top-level settings taken from HOSTFW_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="HOSTFW_", extra="ignore")

    backend: Optional[str] = None
    catalogue_path: Optional[Path] = None
    lock_path: Optional[Path] = None
    command_timeout: Optional[float] = None
    retry_attempts: Optional[int] = None

    def as_dict(self) -> dict:
        """Only the variables that are actually set."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


def get_example_config() -> str:
    """Commented config file written by ``hostfw config init``."""
    return """# hostfw configuration
# Environment variables HOSTFW_BACKEND, HOSTFW_CATALOGUE_PATH,
# HOSTFW_LOCK_PATH, HOSTFW_COMMAND_TIMEOUT and HOSTFW_RETRY_ATTEMPTS
# override the values below.

backend: iptables  # iptables, firewalld, nftables
catalogue_path: /var/lib/hostfw/rules.yaml
lock_path: /run/hostfw.lock

command_timeout: 5.0       # seconds per firewall command
retry_attempts: 3          # attempts on lock contention
retry_backoff: 0.5         # initial backoff, doubled per attempt
compensation_attempts: 3   # attempts per undo step

sync_on_startup: true      # re-apply missing rules before the first change
prune_unexpected: false    # remove hostfw-tagged rules unknown to the catalogue

iptables:
  chain: HOSTFW
  parent_chain: INPUT
  rules_v4: /etc/iptables/rules.v4
  rules_v6: /etc/iptables/rules.v6

firewalld:
  zone: public

nftables:
  table: hostfw
  chain: input
  priority: -10
  ruleset_path: /etc/nftables.d/hostfw.nft
"""


def init_config(path: Path, force: bool = False) -> None:
    """Write the example configuration to ``path`` with mode 0600.

    An existing file is only replaced with ``force``.
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(get_example_config())
    os.chmod(path, 0o600)
