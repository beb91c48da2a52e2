"""Batch command: apply a YAML file of operations as one unit.

File format (a bare list is accepted too):

    operations:
      - action: create
        kind: port
        port: "8080"
        protocol: tcp
        strategy: accept
      - action: create
        kind: address
        address: 203.0.113.0/24
        strategy: drop
      - action: update
        id: 3
        kind: address
        address: 10.0.0.0/8
        strategy: accept
      - action: delete
        ids: [4, 5]
"""

from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import pydantic
import typer
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hostfw.commands.common import (
    ConfigOption,
    DryRunOption,
    NoColorOption,
    QuietOption,
    VerboseOption,
    get_service,
    handle_error,
)
from hostfw.core.exceptions import HostfwError, ValidationError
from hostfw.core.output import console
from hostfw.services.batch import BatchResult
from hostfw.services.reconciler import (
    CreateAddress,
    CreatePort,
    DeleteSet,
    Operation,
    UpdateAddress,
    UpdatePort,
)
from hostfw.services.rules import RuleDraft


class BatchItem(BaseModel):
    """One operation in a batch file."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    action: Literal["create", "update", "delete"]
    kind: Optional[Literal["port", "address"]] = None
    id: Optional[int] = None
    ids: list[int] = Field(default_factory=list)

    strategy: Optional[str] = None
    protocol: Optional[str] = None
    port_spec: Optional[str] = Field(default=None, alias="port")
    address: Optional[str] = None
    source_address: Optional[str] = None
    family: Optional[str] = None
    description: Optional[str] = None
    enabled: bool = True

    @field_validator("port_spec", mode="before")
    @classmethod
    def coerce_port(cls, v: Union[str, int, None]) -> Optional[str]:
        # YAML reads a bare 8080 as an integer
        return None if v is None else str(v)

    @model_validator(mode="after")
    def check_required(self) -> "BatchItem":
        if self.action == "delete":
            if self.id is not None:
                self.ids = [self.id] + [i for i in self.ids if i != self.id]
            if not self.ids:
                raise ValueError("delete needs id or ids")
            return self
        if self.kind is None:
            raise ValueError(f"{self.action} needs kind (port or address)")
        if self.strategy is None:
            raise ValueError(f"{self.action} needs strategy (accept or drop)")
        if self.action == "update" and self.id is None:
            raise ValueError("update needs id")
        return self

    def to_draft(self) -> RuleDraft:
        return RuleDraft(
            kind=self.kind or "",
            strategy=self.strategy or "",
            protocol=self.protocol,
            port_spec=self.port_spec,
            address=self.address,
            source_address=self.source_address,
            family=self.family,
            description=self.description,
            enabled=self.enabled,
        )

    def to_operation(self) -> Operation:
        if self.action == "delete":
            return DeleteSet(list(self.ids))
        if self.action == "create":
            if self.kind == "port":
                return CreatePort(self.to_draft())
            return CreateAddress(self.to_draft())
        if self.kind == "port":
            return UpdatePort(self.id, self.to_draft())
        return UpdateAddress(self.id, self.to_draft())


class BatchFile(BaseModel):
    """Top level of a batch file."""

    operations: list[BatchItem]


def load_batch_file(path: Path) -> list[Operation]:
    """Parse a batch file into operations.

    Raises:
        ValidationError: If the file is unreadable or malformed
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ValidationError(f"Cannot read batch file: {path}", field="file", details=[str(e)])
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in batch file: {path}", field="file", details=[str(e)])

    if isinstance(data, list):
        data = {"operations": data}
    if not isinstance(data, dict):
        raise ValidationError(
            "Batch file must contain a list of operations",
            field="operations",
        )

    try:
        batch = BatchFile.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid batch file: {path}",
            field="operations",
            details=[
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ],
        ) from e

    if not batch.operations:
        raise ValidationError("Batch file contains no operations", field="operations")
    return [item.to_operation() for item in batch.operations]


def show_batch_result(result: BatchResult) -> None:
    """Print per-operation outcome and compensation report."""
    for done in result.applied:
        ids = ", ".join(str(i) for i in done.rule_ids)
        console.print(f"  [green]OK[/green]  {done.operation.describe()} (rule {ids})")

    if result.compensations:
        rows = [
            [
                c.description,
                ", ".join(str(i) for i in c.rule_ids),
                "[green]yes[/green]" if c.succeeded else "[red]NO[/red]",
                c.error or "",
            ]
            for c in result.compensations
        ]
        console.table("Compensation", ["Operation", "Rules", "Succeeded", "Error"], rows)

    if result.divergent_ids:
        console.warn(
            "Rules flagged divergent: "
            + ", ".join(str(i) for i in result.divergent_ids)
        )
        console.hint("Inspect the host firewall, then run: hostfw sync")


def batch(
    file: Annotated[
        Path,
        typer.Argument(help="YAML file with operations", exists=True, dir_okay=False),
    ],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Apply a file of operations as one all-or-nothing batch.

    On the first failure every completed operation is undone in reverse
    order and the triggering error is reported.
    """
    ctx, service = get_service(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )
    try:
        operations = load_batch_file(file)
        result = service.batch_operate_rule(operations)
    except HostfwError as e:
        handle_error(e)
        return

    show_batch_result(result)

    if result.success:
        ctx.console.success(f"Batch applied: {len(result.applied)} operation(s)")
        return

    ctx.console.error("Batch failed and was rolled back")
    handle_error(result.error)
