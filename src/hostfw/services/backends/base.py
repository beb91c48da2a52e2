"""Backend adapter interface for the live firewall engine.

Every concrete engine (iptables, firewalld, nftables) implements the
same small capability set over RuleDescriptors:

- apply_rule: idempotent, already present is success
- remove_rule: idempotent, already absent is success
- list_active: descriptors currently enforced by entries hostfw owns
- persist: save runtime state so it survives a restart

Calls are blocking subprocess invocations with a bounded timeout.
Transient failures (lock contention) are retried with exponential
backoff; everything else surfaces as BackendError immediately.
"""

import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, TypeVar

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import BackendError, ExecutionError
from hostfw.core.executor import CommandExecutor, CommandResult
from hostfw.services.rules import RuleDescriptor


T = TypeVar("T")

# Comment attached to every entry hostfw creates
OWNER_TAG = "hostfw"


class FirewallBackend(ABC):
    """Capability interface of a live firewall engine."""

    name: str = "abstract"

    # Substrings of stderr that mark a retryable failure
    TRANSIENT_MARKERS: tuple[str, ...] = ()

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ) -> None:
        """Initialize backend.

        Args:
            ctx: Execution context
            executor: Command executor used for every engine call
            retry_attempts: Attempts for transient failures (config if None)
            retry_backoff: Initial backoff in seconds (config if None)
        """
        self.ctx = ctx
        self.executor = executor
        config = ctx.config
        self.retry_attempts = config.retry_attempts if retry_attempts is None else retry_attempts
        self.retry_backoff = config.retry_backoff if retry_backoff is None else retry_backoff
        self._prepared = False

    # =========================================================================
    # Public capability set
    # =========================================================================

    def prepare(self) -> None:
        """Create the owned chain/table once per process."""
        if self._prepared:
            return
        self._retry(self._prepare, "prepare firewall")
        self._prepared = True

    def apply_rule(self, descriptor: RuleDescriptor) -> None:
        """Ensure the descriptor is enforced.

        Raises:
            BackendError: If the engine rejects or cannot run the change
        """
        self.prepare()
        self.ctx.console.verbose(f"Applying {descriptor}")
        self._retry(lambda: self._apply(descriptor), f"apply {descriptor}")

    def remove_rule(self, descriptor: RuleDescriptor) -> None:
        """Ensure the descriptor is no longer enforced.

        Raises:
            BackendError: If the engine rejects or cannot run the change
        """
        self.prepare()
        self.ctx.console.verbose(f"Removing {descriptor}")
        self._retry(lambda: self._remove(descriptor), f"remove {descriptor}")

    def list_active(self) -> set[RuleDescriptor]:
        """Descriptors currently enforced by hostfw-owned entries."""
        return self._retry(self._list, "list active rules")

    def persist(self) -> None:
        """Save runtime rules so they survive a restart."""
        self._retry(self._persist, "persist firewall rules")

    # =========================================================================
    # Engine specific primitives
    # =========================================================================

    def _prepare(self) -> None:
        """Create owned chains or tables (default: nothing to do)."""

    @abstractmethod
    def _apply(self, descriptor: RuleDescriptor) -> None:
        ...

    @abstractmethod
    def _remove(self, descriptor: RuleDescriptor) -> None:
        ...

    @abstractmethod
    def _list(self) -> set[RuleDescriptor]:
        ...

    @abstractmethod
    def _persist(self) -> None:
        ...

    # =========================================================================
    # Helpers
    # =========================================================================

    def _write_saved_rules(self, path: Path, content: str, description: str) -> None:
        """Write a saved ruleset file, reporting filesystem errors as BackendError."""
        try:
            self.executor.write_file(path, content, description=description, permissions=0o640)
        except OSError as e:
            raise BackendError(
                f"Cannot save {self.name} rules to {path}: {e.strerror or e}",
                hint="Check that the directory exists and is writable",
            ) from e

    def is_transient(self, result: CommandResult) -> bool:
        """Check whether a failed call is worth retrying."""
        stderr = result.stderr.lower()
        return any(marker in stderr for marker in self.TRANSIENT_MARKERS)

    def _run(
        self,
        command: list[str],
        *,
        check: bool = True,
        input: Optional[str] = None,
        mutating: bool = True,
    ) -> CommandResult:
        """Run an engine command, mapping failures to BackendError."""
        try:
            result = self.executor.run(command, check=False, input=input, mutating=mutating)
        except ExecutionError as e:
            # Timeout or missing binary: the control mechanism is unavailable
            raise BackendError(
                f"{self.name} is unavailable: {e.message}",
                command=e.command,
                hint=e.hint,
            ) from e

        if check and result.return_code != 0:
            raise BackendError(
                f"{self.name} command failed (exit {result.return_code})",
                transient=self.is_transient(result),
                command=" ".join(command),
                stderr=result.stderr,
            )
        return result

    def _retry(self, fn: Callable[[], T], description: str) -> T:
        """Call fn, retrying transient BackendErrors with backoff."""
        delay = self.retry_backoff
        for attempt in range(1, self.retry_attempts):
            try:
                return fn()
            except BackendError as e:
                if not e.transient:
                    raise
                self.ctx.console.debug(
                    f"{self.name}: {description} hit a transient failure "
                    f"(attempt {attempt}/{self.retry_attempts}), retrying in {delay:.2f}s"
                )
                time.sleep(delay)
                delay *= 2
        return fn()
