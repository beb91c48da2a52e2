"""Per-invocation state shared by the executor, backends and services."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from hostfw.core.config import DEFAULT_CONFIG_PATH, HostfwConfig
from hostfw.core.output import Console, Verbosity, console


@dataclass
class ExecutionContext:
    """Flags of the current hostfw command.

    ``config`` is read from ``config_path`` on first access, so commands
    that never touch the firewall (``--version``, ``config init``) work
    without a readable configuration file. Tests pass ``_config``
    directly.
    """

    dry_run: bool = False
    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    _config: Optional[HostfwConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> HostfwConfig:
        if self._config is None:
            self._config = HostfwConfig.load_or_default(self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        return self._console


def create_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Build the context for one command from its global options.

    ``--quiet`` wins over any number of ``-v`` flags.
    """
    verbosity = Verbosity.QUIET if quiet else min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)
    return ExecutionContext(
        dry_run=dry_run,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
