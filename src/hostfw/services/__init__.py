"""Rule model, catalogue, reconciliation and firewall backends."""

from hostfw.services.firewall import FirewallService
from hostfw.services.reconciler import Reconciler
from hostfw.services.batch import BatchExecutor

__all__ = [
    "FirewallService",
    "Reconciler",
    "BatchExecutor",
]
