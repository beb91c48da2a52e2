"""Reconciliation of desired rule state with the live firewall.

One operation runs end to end under the host lock:

1. Validate the draft (no side effects)
2. Check for conflicts against enabled catalogue rules
3. Compute the minimal backend delta over RuleDescriptors
4. Apply the delta, recording an undo step for each change
5. Commit the catalogue, then persist the backend

A backend failure in step 4 undoes the applied steps in reverse order and
leaves the catalogue untouched. When an undo also fails the caller gets
PartialFailure listing the descriptors left in an unconfirmed state.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Callable, Iterator, Optional, Union

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import (
    BackendError,
    ConfigurationError,
    ConflictError,
    PartialFailure,
    ValidationError,
)
from hostfw.core.executor import RollbackStack
from hostfw.core.locking import HostLock
from hostfw.services.backends.base import FirewallBackend
from hostfw.services.catalogue import RuleCatalogue
from hostfw.services.rules import Rule, RuleDescriptor, RuleDraft, RuleKind
from hostfw.services.validator import validate


# =============================================================================
# Operations
# =============================================================================


@dataclass
class CreatePort:
    """Create a port rule."""
    draft: RuleDraft

    def describe(self) -> str:
        return f"create port rule {self.draft.protocol}/{self.draft.port_spec}"


@dataclass
class CreateAddress:
    """Create an address rule."""
    draft: RuleDraft

    def describe(self) -> str:
        return f"create address rule {self.draft.address}"


@dataclass
class UpdatePort:
    """Replace the semantic fields of a port rule."""
    rule_id: int
    draft: RuleDraft

    def describe(self) -> str:
        return f"update port rule {self.rule_id}"


@dataclass
class UpdateAddress:
    """Replace the semantic fields of an address rule."""
    rule_id: int
    draft: RuleDraft

    def describe(self) -> str:
        return f"update address rule {self.rule_id}"


@dataclass
class DeleteSet:
    """Delete several rules at once."""
    rule_ids: list[int]

    def describe(self) -> str:
        return f"delete rule(s) {', '.join(str(i) for i in self.rule_ids)}"


@dataclass
class RestoreSet:
    """Put records back exactly as they were (compensation only)."""
    records: list[Rule]

    def describe(self) -> str:
        return f"restore rule(s) {', '.join(str(r.id) for r in self.records)}"


Operation = Union[CreatePort, CreateAddress, UpdatePort, UpdateAddress, DeleteSet, RestoreSet]


@dataclass
class ReconcileResult:
    """Outcome of one reconciled operation."""
    operation: Operation
    rules: list[Rule]
    applied: list[RuleDescriptor] = field(default_factory=list)
    removed: list[RuleDescriptor] = field(default_factory=list)
    inverse: Optional[Operation] = None

    @property
    def rule_ids(self) -> list[int]:
        return [r.id for r in self.rules]


@dataclass
class DriftReport:
    """Difference between enabled catalogue rules and the live firewall."""
    missing: list[RuleDescriptor] = field(default_factory=list)
    unexpected: list[RuleDescriptor] = field(default_factory=list)
    applied: list[RuleDescriptor] = field(default_factory=list)
    pruned: list[RuleDescriptor] = field(default_factory=list)
    cleared: list[int] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.missing and not self.unexpected

    def to_dict(self) -> dict:
        return {
            "in_sync": self.in_sync,
            "missing": [str(d) for d in self.missing],
            "unexpected": [str(d) for d in self.unexpected],
            "applied": [str(d) for d in self.applied],
            "pruned": [str(d) for d in self.pruned],
            "cleared": self.cleared,
        }


@dataclass
class _Plan:
    """Records before and after an operation, plus how to commit it."""
    old: list[Rule]
    new: list[Rule]
    commit: Callable[[], list[Rule]]
    inverse: Callable[[list[Rule]], Optional[Operation]]


def _descriptors(rules: list[Rule]) -> set[RuleDescriptor]:
    """Descriptors enforced by the enabled rules in the list."""
    return {d for r in rules if r.enabled for d in r.descriptors()}


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Drives catalogue and backend to the same enabled-rule set."""

    def __init__(
        self,
        ctx: ExecutionContext,
        catalogue: RuleCatalogue,
        backend: FirewallBackend,
        lock: Optional[HostLock] = None,
        *,
        compensation_attempts: Optional[int] = None,
        compensation_backoff: Optional[float] = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            ctx: Execution context
            catalogue: Durable rule record
            backend: Live firewall adapter
            lock: Host mutation lock (a private one if None)
            compensation_attempts: Tries per undo step (config if None)
            compensation_backoff: Initial undo backoff (config retry_backoff if None)
        """
        self.ctx = ctx
        self.catalogue = catalogue
        self.backend = backend
        self.lock = lock or HostLock()
        config = ctx.config
        self.compensation_attempts = (
            compensation_attempts if compensation_attempts is not None else config.compensation_attempts
        )
        self.compensation_backoff = (
            compensation_backoff if compensation_backoff is not None else config.retry_backoff
        )

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the host lock, re-reading the catalogue on first acquisition.

        Another process may have committed since this catalogue was loaded.
        """
        with self.lock.hold():
            if self.lock.depth == 1:
                self.catalogue.refresh()
            yield

    # =========================================================================
    # Operations
    # =========================================================================

    def reconcile(self, operation: Operation, *, persist: bool = True) -> ReconcileResult:
        """Apply one operation to backend and catalogue.

        Args:
            operation: What to change
            persist: Save backend state afterwards (batches defer this)

        Returns:
            ReconcileResult with the committed records and the inverse operation

        Raises:
            ValidationError: Draft is invalid (nothing changed)
            ConflictError: An equivalent enabled rule exists (nothing changed)
            NotFoundError: Target id unknown (nothing changed)
            BackendError: Backend failed and every undo step succeeded
            PartialFailure: Backend failed and some undo steps failed too
        """
        with self.locked():
            plan = self._plan(operation)
            self.ctx.console.verbose(f"Reconciling: {operation.describe()}")

            applied, removed, rollback = self._apply_delta(plan)

            try:
                committed = plan.commit()
            except OSError as e:
                self._undo(rollback, e)
                raise ConfigurationError(
                    f"Cannot write rule catalogue: {self.catalogue.path}",
                    hint="Check permissions of the catalogue directory",
                    details=[str(e)],
                ) from e
            rollback.commit()

            if persist:
                self.persist()

            return ReconcileResult(
                operation=operation,
                rules=committed,
                applied=applied,
                removed=removed,
                inverse=plan.inverse(committed),
            )

    def persist(self) -> None:
        """Save backend state; failure is reported, not raised."""
        try:
            self.backend.persist()
        except BackendError as e:
            # Runtime state and catalogue already agree; only the saved copy is stale
            self.ctx.console.warn(f"Could not persist firewall rules: {e.message}")
            self.ctx.console.hint("Run 'hostfw sync' to retry saving the ruleset")

    # =========================================================================
    # Drift
    # =========================================================================

    def detect_drift(self) -> DriftReport:
        """Compare enabled catalogue rules with what the backend enforces."""
        expected = _descriptors(self.catalogue.enabled_rules())
        active = self.backend.list_active()
        return DriftReport(
            missing=sorted(expected - active, key=RuleDescriptor.apply_order),
            unexpected=sorted(active - expected, key=RuleDescriptor.remove_order),
        )

    def sync(self, prune: bool = False, *, persist: bool = True) -> DriftReport:
        """Re-apply missing descriptors and handle unexpected ones.

        Args:
            prune: Remove owned entries that no enabled rule needs
            persist: Save backend state afterwards

        Returns:
            DriftReport describing what was found and done
        """
        with self.locked():
            self.backend.prepare()
            report = self.detect_drift()

            for descriptor in report.missing:
                self.backend.apply_rule(descriptor)
                report.applied.append(descriptor)

            for descriptor in report.unexpected:
                if prune:
                    self.backend.remove_rule(descriptor)
                    report.pruned.append(descriptor)
                else:
                    self.ctx.console.warn(f"Unexpected firewall entry: {descriptor}")

            if self.ctx.dry_run:
                enforced = _descriptors(self.catalogue.enabled_rules())
            else:
                enforced = self.backend.list_active()

            for rule in self.catalogue.all():
                if not rule.divergent:
                    continue
                descriptors = set(rule.descriptors())
                if rule.enabled and descriptors <= enforced:
                    report.cleared.append(rule.id)
                elif not rule.enabled and not descriptors & enforced:
                    report.cleared.append(rule.id)
            self.catalogue.mark_divergent(report.cleared, False)

            if persist:
                self.persist()
            return report

    # =========================================================================
    # Planning
    # =========================================================================

    def _plan(self, operation: Operation) -> _Plan:
        if isinstance(operation, CreatePort):
            return self._plan_create(operation.draft, RuleKind.PORT)
        if isinstance(operation, CreateAddress):
            return self._plan_create(operation.draft, RuleKind.ADDRESS)
        if isinstance(operation, UpdatePort):
            return self._plan_update(operation.rule_id, operation.draft, RuleKind.PORT)
        if isinstance(operation, UpdateAddress):
            return self._plan_update(operation.rule_id, operation.draft, RuleKind.ADDRESS)
        if isinstance(operation, DeleteSet):
            return self._plan_delete(operation.rule_ids)
        if isinstance(operation, RestoreSet):
            return self._plan_restore(operation.records)
        raise ValidationError(f"Unsupported operation: {type(operation).__name__}")

    def _validated(self, draft: RuleDraft, kind: RuleKind, exclude_id: Optional[int] = None) -> Rule:
        rule = validate(replace(draft, kind=kind.value))
        existing = self.catalogue.find_conflict(rule, exclude_id=exclude_id)
        if existing is not None:
            raise ConflictError(
                f"An equivalent {kind.value} rule already exists: {existing}",
                existing_id=existing.id,
            )
        return rule

    def _plan_create(self, draft: RuleDraft, kind: RuleKind) -> _Plan:
        rule = self._validated(draft, kind)
        return _Plan(
            old=[],
            new=[rule],
            commit=lambda: [self.catalogue.insert(rule)],
            inverse=lambda committed: DeleteSet([r.id for r in committed]),
        )

    def _plan_update(self, rule_id: int, draft: RuleDraft, kind: RuleKind) -> _Plan:
        current = self.catalogue.get(rule_id)
        if current.kind != kind:
            raise ValidationError(
                f"Rule {rule_id} is a {current.kind.value} rule, not a {kind.value} rule",
                field="kind",
            )
        rule = self._validated(draft, kind, exclude_id=rule_id).copy(
            id=rule_id, created_at=current.created_at,
        )
        return _Plan(
            old=[current],
            new=[rule],
            commit=lambda: [self.catalogue.replace(rule)],
            inverse=lambda committed: RestoreSet([current]),
        )

    def _plan_delete(self, rule_ids: list[int]) -> _Plan:
        if not rule_ids:
            raise ValidationError("No rule ids given", field="rule_ids")
        targets = self.catalogue.get_many(rule_ids)
        return _Plan(
            old=targets,
            new=[],
            commit=lambda: self.catalogue.remove(r.id for r in targets),
            inverse=lambda committed: RestoreSet(committed),
        )

    def _plan_restore(self, records: list[Rule]) -> _Plan:
        current = [r for r in (self.catalogue.find(rec.id) for rec in records) if r]
        return _Plan(
            old=current,
            new=list(records),
            commit=lambda: self.catalogue.restore(records),
            inverse=lambda committed: None,
        )

    # =========================================================================
    # Backend delta
    # =========================================================================

    def _apply_delta(
        self, plan: _Plan
    ) -> tuple[list[RuleDescriptor], list[RuleDescriptor], RollbackStack]:
        """Remove stale descriptors, then apply new ones.

        Descriptors shared by old and new state, or still required by an
        enabled rule outside the operation, are left alone.
        """
        touched = {r.id for r in plan.old + plan.new if r.id is not None}
        others = [r for r in self.catalogue.enabled_rules() if r.id not in touched]
        required = _descriptors(others)

        old = _descriptors(plan.old)
        new = _descriptors(plan.new)
        to_remove = sorted(old - new - required, key=RuleDescriptor.remove_order)
        to_apply = sorted(new - old - required, key=RuleDescriptor.apply_order)

        rollback = RollbackStack()
        if not to_remove and not to_apply:
            return [], [], rollback

        try:
            for descriptor in to_remove:
                self.backend.remove_rule(descriptor)
                rollback.add(
                    f"Re-apply {descriptor}",
                    partial(self.backend.apply_rule, descriptor),
                    subject=descriptor,
                )
            for descriptor in to_apply:
                self.backend.apply_rule(descriptor)
                rollback.add(
                    f"Remove {descriptor}",
                    partial(self.backend.remove_rule, descriptor),
                    subject=descriptor,
                )
        except BackendError as e:
            self._undo(rollback, e)
            raise

        return to_apply, to_remove, rollback

    def _undo(self, rollback: RollbackStack, cause: Exception) -> None:
        """Run undo steps; raise PartialFailure if any of them fails."""
        failed = rollback.rollback(
            attempts=self.compensation_attempts,
            backoff=self.compensation_backoff,
        )
        if failed:
            raise PartialFailure(
                f"Firewall change failed and {len(failed)} undo step(s) failed too",
                uncertain=[action.subject for action in failed],
                cause=cause if isinstance(cause, BackendError) else None,
            ) from cause
