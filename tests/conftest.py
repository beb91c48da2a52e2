"""Shared fixtures: a real context on tmp_path and an in-memory backend."""

from typing import Callable, Optional
from unittest.mock import Mock

import pytest

from hostfw.core.config import HostfwConfig
from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import BackendError
from hostfw.core.executor import CommandResult
from hostfw.core.locking import HostLock
from hostfw.services.backends.base import FirewallBackend
from hostfw.services.batch import BatchExecutor
from hostfw.services.catalogue import RuleCatalogue
from hostfw.services.reconciler import Reconciler
from hostfw.services.rules import RuleDescriptor, RuleDraft


class FakeBackend(FirewallBackend):
    """In-memory firewall with failure injection.

    ``calls`` records every successful primitive in order, so tests can
    assert on drop-before-accept ordering.
    """

    name = "fake"

    def __init__(self, ctx: ExecutionContext) -> None:
        super().__init__(ctx, Mock(), retry_attempts=3, retry_backoff=0.001)
        self.active: set[RuleDescriptor] = set()
        self.calls: list[tuple[str, RuleDescriptor]] = []
        self.persist_count = 0
        self._failures: list[dict] = []

    def fail(
        self,
        action: str,
        match: Optional[Callable[[RuleDescriptor], bool]] = None,
        *,
        transient: bool = False,
        times: Optional[int] = None,
    ) -> None:
        """Make ``action`` ("apply", "remove", "list", "persist") fail.

        Args:
            action: Primitive to break
            match: Only descriptors for which this returns True
            transient: Raise a retryable error
            times: Fail this many times, then succeed (forever if None)
        """
        self._failures.append({
            "action": action,
            "match": match,
            "transient": transient,
            "remaining": times,
        })

    def heal(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, action: str, descriptor: Optional[RuleDescriptor] = None) -> None:
        for failure in self._failures:
            if failure["action"] != action:
                continue
            if failure["match"] is not None and not failure["match"](descriptor):
                continue
            if failure["remaining"] is not None:
                if failure["remaining"] <= 0:
                    continue
                failure["remaining"] -= 1
            raise BackendError(
                f"injected {action} failure",
                transient=failure["transient"],
                stderr="Another app is currently holding the xtables lock"
                if failure["transient"] else "rule rejected",
            )

    def _apply(self, descriptor: RuleDescriptor) -> None:
        self._maybe_fail("apply", descriptor)
        self.calls.append(("apply", descriptor))
        self.active.add(descriptor)

    def _remove(self, descriptor: RuleDescriptor) -> None:
        self._maybe_fail("remove", descriptor)
        self.calls.append(("remove", descriptor))
        self.active.discard(descriptor)

    def _list(self) -> set[RuleDescriptor]:
        self._maybe_fail("list")
        return set(self.active)

    def _persist(self) -> None:
        self._maybe_fail("persist")
        self.persist_count += 1

    def applied(self) -> list[RuleDescriptor]:
        return [d for action, d in self.calls if action == "apply"]


@pytest.fixture
def config(tmp_path) -> HostfwConfig:
    """Configuration pointing every path into tmp_path."""
    return HostfwConfig(
        catalogue_path=tmp_path / "rules.yaml",
        lock_path=tmp_path / "hostfw.lock",
        retry_backoff=0.001,
        sync_on_startup=False,
        iptables={"rules_v4": tmp_path / "rules.v4", "rules_v6": tmp_path / "rules.v6"},
        nftables={"ruleset_path": tmp_path / "hostfw.nft"},
    )


@pytest.fixture
def ctx(config, tmp_path) -> ExecutionContext:
    """Real execution context using the tmp_path configuration."""
    return ExecutionContext(config_path=tmp_path / "config.yaml", _config=config)


@pytest.fixture
def mock_ctx(config):
    """Mock execution context for backend tests."""
    ctx = Mock()
    ctx.dry_run = False
    ctx.console = Mock()
    ctx.config = config
    return ctx


@pytest.fixture
def backend(ctx) -> FakeBackend:
    return FakeBackend(ctx)


@pytest.fixture
def catalogue(ctx) -> RuleCatalogue:
    return RuleCatalogue(ctx)


@pytest.fixture
def reconciler(ctx, catalogue, backend) -> Reconciler:
    return Reconciler(ctx, catalogue, backend, HostLock(), compensation_attempts=2)


@pytest.fixture
def batch_executor(reconciler) -> BatchExecutor:
    return BatchExecutor(reconciler)


def command_result(return_code=0, stdout="", stderr="", command=None) -> CommandResult:
    """CommandResult as a mocked executor would return it."""
    return CommandResult(command=command or [], return_code=return_code, stdout=stdout, stderr=stderr)


def scripted_executor(respond: Callable[[list[str]], CommandResult]) -> Mock:
    """Mock executor whose ``run`` answers through ``respond(command)``."""
    executor = Mock()
    executor.run.side_effect = lambda command, **kwargs: respond(command)
    return executor


def commands_run(executor: Mock) -> list[list[str]]:
    """Every command passed to a mocked executor, in order."""
    return [c.args[0] for c in executor.run.call_args_list]


def port_draft(port="8080", protocol="tcp", strategy="accept", **kwargs) -> RuleDraft:
    """Port rule draft with sensible defaults."""
    return RuleDraft(kind="port", strategy=strategy, protocol=protocol, port_spec=port, **kwargs)


def address_draft(address="10.0.0.0/8", strategy="drop", **kwargs) -> RuleDraft:
    """Address rule draft with sensible defaults."""
    return RuleDraft(kind="address", strategy=strategy, address=address, **kwargs)
