"""Firewall service: the entry point used by the CLI.

Wires configuration, command executor, backend, catalogue and host lock
together, and runs a startup sync before the first mutation so a host
that rebooted or was edited by hand is brought back in line first.
"""

from typing import Optional, Sequence

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import HostfwError
from hostfw.core.executor import CommandExecutor
from hostfw.core.locking import CancelToken, HostLock
from hostfw.services.backends import FirewallBackend, get_backend
from hostfw.services.batch import BatchExecutor, BatchResult
from hostfw.services.catalogue import RuleCatalogue
from hostfw.services.reconciler import (
    CreateAddress,
    CreatePort,
    DeleteSet,
    DriftReport,
    Operation,
    Reconciler,
    UpdateAddress,
    UpdatePort,
)
from hostfw.services.rules import Rule, RuleDraft
from hostfw.services.search import RuleFilter, SearchResult, search


class FirewallService:
    """Create, update, delete and search host firewall rules."""

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        backend: Optional[FirewallBackend] = None,
        catalogue: Optional[RuleCatalogue] = None,
        lock: Optional[HostLock] = None,
        executor: Optional[CommandExecutor] = None,
    ) -> None:
        """Initialize service.

        Args:
            ctx: Execution context
            backend: Firewall backend (from config if None)
            catalogue: Rule catalogue (config catalogue_path if None)
            lock: Host lock (config lock_path if None, in-process only in dry-run)
            executor: Command executor for the backend
        """
        self.ctx = ctx
        config = ctx.config
        self.executor = executor or CommandExecutor(ctx)
        self.backend = backend or get_backend(ctx, self.executor)
        self.catalogue = catalogue or RuleCatalogue(ctx)
        self.lock = lock or HostLock(None if ctx.dry_run else config.lock_path)
        self.reconciler = Reconciler(ctx, self.catalogue, self.backend, self.lock)
        self.batch = BatchExecutor(self.reconciler)
        self._synced = not config.sync_on_startup

    # =========================================================================
    # Mutations
    # =========================================================================

    def operate_port_rule(self, draft: RuleDraft) -> Rule:
        """Create a port rule."""
        return self._reconcile(CreatePort(draft))[0]

    def operate_address_rule(self, draft: RuleDraft) -> Rule:
        """Create an address rule."""
        return self._reconcile(CreateAddress(draft))[0]

    def update_port_rule(self, rule_id: int, draft: RuleDraft) -> Rule:
        """Replace a port rule's fields."""
        return self._reconcile(UpdatePort(rule_id, draft))[0]

    def update_addr_rule(self, rule_id: int, draft: RuleDraft) -> Rule:
        """Replace an address rule's fields."""
        return self._reconcile(UpdateAddress(rule_id, draft))[0]

    def batch_delete_rule(self, rule_ids: Sequence[int]) -> list[Rule]:
        """Delete several rules; unknown ids fail the whole call."""
        return self._reconcile(DeleteSet(list(rule_ids)))

    def batch_operate_rule(
        self,
        operations: Sequence[Operation],
        cancel: Optional[CancelToken] = None,
    ) -> BatchResult:
        """Run operations as one all-or-nothing batch."""
        with self.reconciler.locked():
            self._startup_sync()
            return self.batch.execute_batch(operations, cancel=cancel)

    # =========================================================================
    # Queries and recovery
    # =========================================================================

    def search_with_page(
        self,
        rule_filter: Optional[RuleFilter] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> SearchResult:
        """Search the catalogue; never takes the host lock."""
        return search(self.catalogue, rule_filter, page=page, page_size=page_size)

    def detect_drift(self) -> DriftReport:
        """Compare the catalogue with the live firewall."""
        return self.reconciler.detect_drift()

    def sync(self, prune: Optional[bool] = None) -> DriftReport:
        """Bring the live firewall in line with the catalogue."""
        if prune is None:
            prune = self.ctx.config.prune_unexpected
        report = self.reconciler.sync(prune=prune)
        self._synced = True
        return report

    # =========================================================================
    # Helpers
    # =========================================================================

    def _reconcile(self, operation: Operation) -> list[Rule]:
        with self.reconciler.locked():
            self._startup_sync()
            return self.reconciler.reconcile(operation).rules

    def _startup_sync(self) -> None:
        if self._synced:
            return
        self.ctx.console.verbose("Checking live firewall against the catalogue")
        try:
            report = self.reconciler.sync(prune=self.ctx.config.prune_unexpected, persist=False)
        except HostfwError as e:
            e.hint = e.hint or "Fix the firewall backend, then run: hostfw sync"
            raise
        if report.applied or report.pruned:
            self.reconciler.persist()
            self.ctx.console.info(
                f"Startup sync re-applied {len(report.applied)} and removed "
                f"{len(report.pruned)} firewall entr(ies)"
            )
        self._synced = True
