"""Core framework components for hostfw."""

from hostfw.core.exceptions import (
    HostfwError,
    ConfigurationError,
    ValidationError,
    ConflictError,
    ExecutionError,
    NotFoundError,
    BackendError,
    PartialFailure,
    BatchCancelled,
)

from hostfw.core.context import ExecutionContext, create_context
from hostfw.core.output import console, Console, Verbosity
from hostfw.core.config import HostfwConfig
from hostfw.core.executor import CommandExecutor, RollbackStack
from hostfw.core.locking import CancelToken, HostLock

__all__ = [
    # Exceptions
    "HostfwError",
    "ConfigurationError",
    "ValidationError",
    "ConflictError",
    "ExecutionError",
    "NotFoundError",
    "BackendError",
    "PartialFailure",
    "BatchCancelled",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "HostfwConfig",
    # Executor
    "CommandExecutor",
    "RollbackStack",
    # Locking
    "CancelToken",
    "HostLock",
]
