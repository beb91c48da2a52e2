"""Error types raised by hostfw.

Each class maps to one process exit code, so scripts driving the CLI
can tell a rejected draft (3) from an engine failure (15) or a host left
in an uncertain state (16). ``hint`` is printed as the suggested next
step and ``details`` as indented context lines.
"""

from typing import Any, Optional


class HostfwError(Exception):
    """Base class; never raised directly."""

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = list(details or [])

    def __str__(self) -> str:
        return self.message


def _context_lines(**labelled: Optional[Any]) -> list[str]:
    """Detail lines such as "Exit code: 1" for the values that are set."""
    return [
        f"{label.replace('_', ' ')}: {value}"
        for label, value in labelled.items()
        if value not in (None, "")
    ]


class ConfigurationError(HostfwError):
    """Unreadable or invalid configuration, unknown backend or lock file."""
    exit_code = 2


class ValidationError(HostfwError):
    """A rule draft or request was rejected before anything changed.

    ``field`` names the offending input where one can be singled out.
    """
    exit_code = 3

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class ConflictError(HostfwError):
    """Another enabled rule already expresses the same directive."""
    exit_code = 4

    def __init__(self, message: str, *, existing_id: Optional[int] = None, **kwargs: Any) -> None:
        if existing_id is not None and not kwargs.get("hint"):
            kwargs["hint"] = f"Update or delete rule {existing_id} instead"
        super().__init__(message, **kwargs)
        self.existing_id = existing_id


class ExecutionError(HostfwError):
    """A subprocess could not be started, timed out or exited non-zero."""
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", None) or []
        details += _context_lines(Exit_code=return_code, Error_output=stderr)
        super().__init__(message, details=details, **kwargs)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class NotFoundError(HostfwError):
    """One or more rule ids are not in the catalogue."""
    exit_code = 6

    def __init__(self, message: str, *, ids: Optional[list[int]] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.ids = list(ids or [])


class BackendError(HostfwError):
    """The firewall engine is unavailable or refused a change.

    Only ``transient`` failures (the engine's own lock is held by
    someone else) are retried.
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        command: Optional[str] = None,
        stderr: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", None) or []
        details += _context_lines(Command=command, Error_output=(stderr or "").strip())
        super().__init__(message, details=details, **kwargs)
        self.transient = transient
        self.command = command
        self.stderr = stderr


class PartialFailure(HostfwError):
    """A change failed and so did part of undoing it.

    ``uncertain`` holds the descriptors or operations whose live state
    is unknown, ``cause`` the error that started the rollback.
    """
    exit_code = 16

    def __init__(
        self,
        message: str,
        *,
        uncertain: Optional[list[Any]] = None,
        cause: Optional[HostfwError] = None,
        **kwargs: Any,
    ) -> None:
        self.uncertain = list(uncertain or [])
        self.cause = cause
        kwargs["hint"] = kwargs.get("hint") or "Inspect the host firewall, then run: hostfw sync"
        kwargs["details"] = kwargs.get("details") or [f"Uncertain: {item}" for item in self.uncertain]
        super().__init__(message, **kwargs)


class BatchCancelled(HostfwError):
    """The caller cancelled a batch; completed operations were undone."""
    exit_code = 17
