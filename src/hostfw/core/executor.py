"""Subprocess execution, undo stacks and atomic file replacement.

All firewall tooling (iptables, firewall-cmd, nft) is driven through
``CommandExecutor`` so that ``--dry-run``, timeouts and ``-vv`` command
echo behave the same for every backend.
"""

import contextlib
import os
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Iterator, Optional

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import ExecutionError
from hostfw.core.output import console


@dataclass
class UndoStep:
    """One registered undo callable.

    ``subject`` is whatever the step puts back (usually a descriptor);
    it is reported when the step cannot be completed.
    """
    description: str
    action: Callable[[], None]
    subject: Any = None
    error: Optional[Exception] = None


def _attempt(step: UndoStep, attempts: int, backoff: float) -> bool:
    delay = backoff
    for attempt in range(attempts):
        if attempt:
            console.debug(f"Retrying '{step.description}' in {delay:.2f}s: {step.error}")
            time.sleep(delay)
            delay *= 2
        try:
            step.action()
        except Exception as e:
            step.error = e
        else:
            step.error = None
            return True
    return False


class RollbackStack:
    """Undo steps recorded while a change is applied, run newest first.

    >>> undo = RollbackStack()
    >>> backend.apply_rule(d)
    >>> undo.add(f"remove {d}", lambda: backend.remove_rule(d), subject=d)
    >>> leftovers = undo.rollback(attempts=3)
    """

    def __init__(self) -> None:
        self.steps: list[UndoStep] = []
        self.committed = False

    def __len__(self) -> int:
        return len(self.steps)

    def add(
        self,
        description: str,
        action: Callable[[], None],
        *,
        subject: Any = None,
    ) -> None:
        """Register an undo step."""
        self.steps.append(UndoStep(description, action, subject))

    def commit(self) -> None:
        """Forget all steps; the change stands."""
        self.steps = []
        self.committed = True

    def rollback(self, *, attempts: int = 1, backoff: float = 0.5) -> list[UndoStep]:
        """Run every step in reverse, each up to ``attempts`` times.

        Returns the steps that still failed.
        """
        if self.committed or not self.steps:
            return []

        console.warn(f"Undoing {len(self.steps)} change(s)")
        pending, self.steps = self.steps, []
        leftovers: list[UndoStep] = []
        while pending:
            step = pending.pop()
            console.step(f"Undo: {step.description}")
            if _attempt(step, max(attempts, 1), backoff):
                continue
            console.error(f"Could not undo '{step.description}': {step.error}")
            leftovers.append(step)
        return leftovers


@dataclass
class CommandResult:
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0


class CommandExecutor:
    """Runs external commands for one hostfw invocation.

    In dry-run mode commands marked ``mutating`` are only echoed and
    report success. Read-only commands (listings, existence checks) are
    flagged ``mutating=False`` by their callers.
    """

    def __init__(self, ctx: ExecutionContext, *, timeout: Optional[float] = None) -> None:
        self.ctx = ctx
        self.timeout = ctx.config.command_timeout if timeout is None else timeout

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
        mutating: bool = True,
    ) -> CommandResult:
        """Run ``command`` and capture its output.

        Raises:
            ExecutionError: the binary is missing or not executable, the
                call timed out, or it exited non-zero while ``check`` is set
        """
        shown = shlex.join(command)
        if description:
            self.ctx.console.step(description)
        self.ctx.console.debug(f"$ {shown}")

        if mutating and self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Run: {shown}")
            return CommandResult(command, 0, "", "")

        limit = self.timeout if timeout is None else timeout
        try:
            completed = subprocess.run(
                command, input=input, capture_output=True, text=True, timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(
                f"Command timed out after {limit}s: {description or shown}",
                command=shown,
            ) from e
        except (FileNotFoundError, PermissionError) as e:
            raise ExecutionError(
                f"Cannot execute {command[0]}: {e}",
                command=shown,
                hint=f"Make sure {command[0]} is installed and you are root",
            ) from e

        result = CommandResult(command, completed.returncode, completed.stdout or "", completed.stderr or "")
        if check and not result.success:
            raise ExecutionError(
                f"Command failed: {description or shown}",
                command=shown,
                return_code=result.return_code,
                stderr=result.stderr,
            )
        return result

    def write_file(
        self,
        path: Path,
        content: str,
        *,
        description: Optional[str] = None,
        permissions: int = 0o644,
    ) -> None:
        """Atomically replace ``path`` with ``content`` (skipped in dry-run)."""
        if description:
            self.ctx.console.step(description)
        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Write {len(content)} bytes to {path}")
            return
        with AtomicFileWriter(path, permissions=permissions).open() as f:
            f.write(content)


class AtomicFileWriter:
    """Write a sibling temp file, fsync it, then rename it over the target.

    Readers see either the old file or the complete new one.
    """

    def __init__(self, target_path: Path, permissions: int = 0o600) -> None:
        self.target_path = Path(target_path)
        self.permissions = permissions

    @contextlib.contextmanager
    def open(self, mode: str = "w") -> Iterator[IO[Any]]:
        directory = self.target_path.parent
        directory.mkdir(mode=0o755, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self.target_path.name}.")
        try:
            os.fchmod(fd, self.permissions)
            with os.fdopen(fd, mode) as f:
                yield f
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.target_path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
