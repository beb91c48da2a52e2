"""Batch execution with abort-on-first-failure and compensation.

Operations run in order under one host-lock hold. On the first failure,
or when a cancellation is observed between operations, every operation
that already succeeded is compensated in reverse order by reconciling
its inverse. The backend is persisted once, at the end.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from hostfw.core.exceptions import BackendError, BatchCancelled, HostfwError, PartialFailure
from hostfw.core.locking import CancelToken
from hostfw.core.validation import canonical_address
from hostfw.services.reconciler import (
    CreateAddress,
    Operation,
    ReconcileResult,
    Reconciler,
    RestoreSet,
)
from hostfw.services.rules import Strategy


@dataclass
class Compensation:
    """Outcome of undoing one reconciled operation."""
    description: str
    rule_ids: list[int]
    succeeded: bool
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Outcome of a batch."""
    success: bool
    applied: list[ReconcileResult] = field(default_factory=list)
    error: Optional[HostfwError] = None
    cancelled: bool = False
    compensations: list[Compensation] = field(default_factory=list)

    @property
    def divergent_ids(self) -> list[int]:
        """Rule ids left flagged divergent by failed compensations."""
        return [i for c in self.compensations if not c.succeeded for i in c.rule_ids]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "applied": [
                {"operation": r.operation.describe(), "rule_ids": r.rule_ids}
                for r in self.applied
            ],
            "error": self.error.message if self.error else None,
            "compensations": [
                {
                    "operation": c.description,
                    "rule_ids": c.rule_ids,
                    "succeeded": c.succeeded,
                    "error": c.error,
                }
                for c in self.compensations
            ],
        }


def _address_family(operation: CreateAddress) -> Optional[str]:
    draft = operation.draft
    if draft.family:
        return str(draft.family).strip().lower()
    try:
        return canonical_address(draft.address or "")[1]
    except HostfwError:
        return None


def _is_drop(operation: CreateAddress) -> bool:
    return str(operation.draft.strategy).strip().lower() == Strategy.DROP.value


def order_operations(operations: Sequence[Operation]) -> list[Operation]:
    """Move drop address creates ahead of accept address creates.

    Only consecutive address creates of the same family are reordered,
    and the move is stable. Everything else keeps its position.
    """
    ordered = list(operations)
    i = 0
    while i < len(ordered):
        if not isinstance(ordered[i], CreateAddress):
            i += 1
            continue

        j = i
        while j < len(ordered) and isinstance(ordered[j], CreateAddress):
            j += 1

        run = ordered[i:j]
        positions: dict[Optional[str], list[int]] = {}
        for index, operation in enumerate(run):
            positions.setdefault(_address_family(operation), []).append(index)

        for family, indexes in positions.items():
            if family is None:
                continue
            members = [run[k] for k in indexes]
            members.sort(key=lambda op: not _is_drop(op))
            for k, operation in zip(indexes, members):
                ordered[i + k] = operation

        i = j
    return ordered


class BatchExecutor:
    """Runs several operations as one all-or-nothing unit."""

    def __init__(self, reconciler: Reconciler) -> None:
        self.reconciler = reconciler
        self.ctx = reconciler.ctx
        self.catalogue = reconciler.catalogue

    def execute_batch(
        self,
        operations: Sequence[Operation],
        cancel: Optional[CancelToken] = None,
    ) -> BatchResult:
        """Execute operations in order with rollback on failure.

        Args:
            operations: Operations to run
            cancel: Token checked between operations

        Returns:
            BatchResult; failures are reported in it, not raised
        """
        ordered = order_operations(operations)
        result = BatchResult(success=False)

        with self.reconciler.locked():
            for index, operation in enumerate(ordered, 1):
                if cancel is not None and cancel.cancelled:
                    result.cancelled = True
                    result.error = BatchCancelled(
                        f"Batch cancelled before operation {index} of {len(ordered)}",
                        hint="Completed operations were rolled back",
                    )
                    break

                self.ctx.console.step(f"[{index}/{len(ordered)}] {operation.describe()}")
                try:
                    result.applied.append(self.reconciler.reconcile(operation, persist=False))
                except HostfwError as e:
                    self.ctx.console.error(f"Operation {index} failed: {e.message}")
                    result.error = e
                    break
            else:
                result.success = True

            if not result.success and result.applied:
                result.compensations = self._compensate(result.applied)

            if result.applied or isinstance(result.error, PartialFailure):
                self.reconciler.persist()

        return result

    def _compensate(self, applied: list[ReconcileResult]) -> list[Compensation]:
        """Reconcile inverses of applied operations, newest first."""
        self.ctx.console.warn(f"Compensating {len(applied)} completed operation(s)...")
        compensations = []
        for done in reversed(applied):
            inverse = done.inverse
            if inverse is None:
                continue

            description = inverse.describe()
            error = self._run_inverse(inverse)
            if error is None:
                compensations.append(Compensation(description, done.rule_ids, True))
                continue

            self.ctx.console.error(f"Compensation failed: {description}: {error.message}")
            self._flag_divergent(done, inverse)
            compensations.append(
                Compensation(description, done.rule_ids, False, error=error.message)
            )
        return compensations

    def _run_inverse(self, inverse: Operation) -> Optional[HostfwError]:
        """Reconcile an inverse with bounded retries; return the last error."""
        attempts = self.reconciler.compensation_attempts
        delay = self.reconciler.compensation_backoff
        for attempt in range(1, attempts + 1):
            try:
                self.reconciler.reconcile(inverse, persist=False)
                return None
            except (BackendError, PartialFailure) as e:
                if attempt == attempts:
                    return e
                self.ctx.console.debug(
                    f"Compensation attempt {attempt}/{attempts} failed: {e.message}"
                )
                time.sleep(delay)
                delay *= 2
            except HostfwError as e:
                return e
        return None

    def _flag_divergent(self, done: ReconcileResult, inverse: Operation) -> None:
        """Keep records inspectable when their backend state is uncertain."""
        if isinstance(inverse, RestoreSet):
            self.catalogue.restore([r.copy(divergent=True) for r in inverse.records])
        else:
            self.catalogue.mark_divergent(done.rule_ids, True)
