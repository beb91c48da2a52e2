"""Console output for hostfw.

Every message goes through the module-level ``console``. Status lines
carry a short coloured tag, warnings and errors are written to stderr so
that rule tables on stdout stay pipeable.
"""

from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """How much the CLI prints."""
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2
    DEBUG = 3


# tag markup and the minimum verbosity for each stdout message kind
_STDOUT_LEVELS: dict[str, tuple[str, Verbosity]] = {
    "info": ("[green][INFO][/green] ", Verbosity.NORMAL),
    "success": ("[green][OK][/green] ", Verbosity.NORMAL),
    "step": ("[blue]->[/blue] ", Verbosity.NORMAL),
    "debug": ("[cyan][DEBUG][/cyan] ", Verbosity.DEBUG),
}


class Console:
    """Thin wrapper around two rich consoles (stdout and stderr).

    ``configure`` is called once per command by the execution context.
    """

    def __init__(self) -> None:
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False
        self._build(no_color=False)

    def _build(self, no_color: bool) -> None:
        self._console = RichConsole(highlight=False, no_color=no_color)
        self._err_console = RichConsole(stderr=True, highlight=False, no_color=no_color)

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Apply command-line flags."""
        clamped = max(int(Verbosity.QUIET), min(int(verbosity), int(Verbosity.DEBUG)))
        self.verbosity = Verbosity(clamped)
        self.dry_run = dry_run
        if no_color != self.no_color:
            self._build(no_color=no_color)
        self.no_color = no_color

    def _emit(self, kind: str, message: str) -> None:
        tag, level = _STDOUT_LEVELS[kind]
        if self.verbosity >= level:
            self._console.print(tag + message)

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def step(self, message: str) -> None:
        """Announce a backend change about to be made."""
        self._emit("step", message)

    def debug(self, message: str) -> None:
        """Command lines and other internals, shown with -vv."""
        self._emit("debug", message)

    def verbose(self, message: str) -> None:
        if self.verbosity >= Verbosity.VERBOSE:
            self._console.print(f"[dim]{message}[/dim]")

    def warn(self, message: str) -> None:
        self._err_console.print(f"[yellow][WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        self._err_console.print(f"[red][ERROR][/red] {message}")

    def hint(self, message: str) -> None:
        """Suggest the next command to run."""
        self._console.print(f"[cyan]Hint:[/cyan] {message}")

    def dry_run_msg(self, message: str) -> None:
        """Echo a change that --dry-run suppressed."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {message}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        self._console.print(message, **kwargs)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.SIMPLE_HEAVY,
    ) -> None:
        """Print rows under the given column headers."""
        table = Table(*columns, title=title, box=box_style, title_justify="left")
        for row in rows:
            table.add_row(*row)
        self._console.print(table)

    def yaml(self, yaml_text: str, title: str = "Configuration") -> None:
        """Print YAML with syntax highlighting inside a panel."""
        body = Syntax(yaml_text, "yaml", theme="ansi_dark", background_color="default")
        self._console.print(Panel(body, title=title, border_style="cyan", expand=False))

    def operation_summary(
        self,
        operation: str,
        success: bool,
        details: dict[str, Any],
    ) -> None:
        """Print a titled panel of counters after a multi-step command."""
        outcome = "done" if success else "failed"
        colour = "green" if success else "red"
        width = max((len(key) for key in details), default=0)
        body = "\n".join(
            f"[bold]{key.ljust(width)}[/bold]  {value}" for key, value in details.items()
        )
        self._console.print(Panel(
            body or "[dim]nothing to report[/dim]",
            title=f"{operation}: [{colour}]{outcome}[/{colour}]",
            border_style=colour,
            expand=False,
        ))


console = Console()
