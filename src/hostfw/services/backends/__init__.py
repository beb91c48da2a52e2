"""Firewall engine adapters."""

from typing import Optional

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import ConfigurationError
from hostfw.core.executor import CommandExecutor
from hostfw.services.backends.base import OWNER_TAG, FirewallBackend
from hostfw.services.backends.firewalld import FirewalldBackend
from hostfw.services.backends.iptables import IptablesBackend
from hostfw.services.backends.nftables import NftablesBackend

BACKENDS: dict[str, type[FirewallBackend]] = {
    "iptables": IptablesBackend,
    "firewalld": FirewalldBackend,
    "nftables": NftablesBackend,
}


def get_backend(
    ctx: ExecutionContext,
    executor: CommandExecutor,
    name: Optional[str] = None,
) -> FirewallBackend:
    """Create the backend selected by name (config ``backend`` if None).

    Raises:
        ConfigurationError: If the name is unknown
    """
    name = name or ctx.config.backend
    try:
        backend_cls = BACKENDS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown firewall backend: {name}",
            hint=f"Valid backends: {', '.join(BACKENDS)}",
        )
    return backend_cls(ctx, executor)


__all__ = [
    "BACKENDS",
    "OWNER_TAG",
    "FirewallBackend",
    "FirewalldBackend",
    "IptablesBackend",
    "NftablesBackend",
    "get_backend",
]
