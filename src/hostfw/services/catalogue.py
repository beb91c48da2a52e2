"""Rule catalogue: the durable record of firewall rules.

The catalogue is the source of truth for queries. It is stored as a YAML
file written atomically on every mutation, so each committed change is a
single all-or-nothing write. Readers always see the last committed
snapshot; mutations swap in a new snapshot after the file is written.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import yaml

from hostfw.core.context import ExecutionContext
from hostfw.core.exceptions import ConfigurationError, NotFoundError
from hostfw.core.executor import AtomicFileWriter
from hostfw.services.rules import Rule, RuleKind


CATALOGUE_VERSION = 1


def utcnow() -> str:
    """Current UTC time as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


class RuleCatalogue:
    """Keyed store of Rule records with monotonic ids.

    Ids come from a persisted ``next_id`` counter and are never reused,
    even after deletion.
    """

    def __init__(self, ctx: ExecutionContext, path: Optional[Path] = None) -> None:
        """Initialize catalogue.

        Args:
            ctx: Execution context
            path: YAML file (config catalogue_path if None)
        """
        self.ctx = ctx
        self.path = Path(path) if path else ctx.config.catalogue_path
        self._rules: Optional[dict[int, Rule]] = None
        self._next_id = 1
        self.last_modified: Optional[str] = None

    # =========================================================================
    # Loading and saving
    # =========================================================================

    @property
    def _snapshot(self) -> dict[int, Rule]:
        if self._rules is None:
            self.refresh()
        return self._rules

    def refresh(self) -> None:
        """Re-read the catalogue file, discarding the in-memory snapshot."""
        if not self.path.exists():
            self._rules = {}
            self._next_id = 1
            return

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            rules = [Rule.from_dict(r) for r in data.get("rules", [])]
        except (yaml.YAMLError, OSError, KeyError, ValueError) as e:
            raise ConfigurationError(
                f"Cannot read rule catalogue: {self.path}",
                hint="Fix or restore the catalogue file; it is never overwritten when unreadable",
                details=[str(e)],
            ) from e

        self._rules = {r.id: r for r in rules}
        highest = max(self._rules, default=0)
        self._next_id = max(int(data.get("next_id", 1)), highest + 1)
        self.last_modified = data.get("last_modified")

    def _commit(self, rules: dict[int, Rule], next_id: int) -> None:
        """Write a new snapshot to disk, then make it visible."""
        modified = utcnow()
        data = {
            "version": CATALOGUE_VERSION,
            "next_id": next_id,
            "last_modified": modified,
            "rules": [r.to_dict() for r in sorted(rules.values(), key=lambda r: r.id)],
        }

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Save {len(rules)} rule(s) to {self.path}")
        else:
            with AtomicFileWriter(self.path, permissions=0o600).open() as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            self.ctx.console.debug(f"Catalogue saved to {self.path}")

        self._rules = rules
        self._next_id = next_id
        self.last_modified = modified

    # =========================================================================
    # Queries
    # =========================================================================

    def all(self) -> list[Rule]:
        """All rules in id order."""
        return [r.copy() for _, r in sorted(self._snapshot.items())]

    def __len__(self) -> int:
        return len(self._snapshot)

    def find(self, rule_id: int) -> Optional[Rule]:
        """Get a rule by id, or None."""
        rule = self._snapshot.get(rule_id)
        return rule.copy() if rule else None

    def get(self, rule_id: int) -> Rule:
        """Get a rule by id.

        Raises:
            NotFoundError: If no rule has this id
        """
        rule = self.find(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found", ids=[rule_id])
        return rule

    def get_many(self, rule_ids: Iterable[int]) -> list[Rule]:
        """Get several rules by id, all or nothing.

        Raises:
            NotFoundError: Listing every missing id
        """
        ids = list(dict.fromkeys(rule_ids))
        missing = [i for i in ids if i not in self._snapshot]
        if missing:
            raise NotFoundError(
                f"Rule(s) not found: {', '.join(str(i) for i in missing)}",
                ids=missing,
            )
        return [self._snapshot[i].copy() for i in ids]

    def enabled_rules(self, kind: Optional[RuleKind] = None) -> list[Rule]:
        """Enabled rules, optionally of one kind."""
        return [
            r for r in self.all()
            if r.enabled and (kind is None or r.kind == kind)
        ]

    def find_conflict(self, rule: Rule, exclude_id: Optional[int] = None) -> Optional[Rule]:
        """Find an enabled rule with the same semantic tuple."""
        if not rule.enabled:
            return None
        key = rule.semantic_key()
        for existing in self.enabled_rules(rule.kind):
            if existing.id != exclude_id and existing.semantic_key() == key:
                return existing
        return None

    # =========================================================================
    # Mutations
    # =========================================================================

    def insert(self, rule: Rule) -> Rule:
        """Insert a new rule, assigning id and timestamps."""
        rules = dict(self._snapshot)
        now = utcnow()
        stored = rule.copy(id=self._next_id, created_at=now, updated_at=now, divergent=False)
        rules[stored.id] = stored
        self._commit(rules, self._next_id + 1)
        return stored.copy()

    def replace(self, rule: Rule) -> Rule:
        """Replace an existing record, keeping its creation time.

        Raises:
            NotFoundError: If the rule id is unknown
        """
        current = self.get(rule.id)
        stored = rule.copy(created_at=current.created_at, updated_at=utcnow())
        rules = dict(self._snapshot)
        rules[stored.id] = stored
        self._commit(rules, self._next_id)
        return stored.copy()

    def remove(self, rule_ids: Iterable[int]) -> list[Rule]:
        """Remove records by id.

        Raises:
            NotFoundError: If any id is unknown (nothing is removed)
        """
        removed = self.get_many(rule_ids)
        rules = dict(self._snapshot)
        for rule in removed:
            del rules[rule.id]
        self._commit(rules, self._next_id)
        return removed

    def restore(self, records: Iterable[Rule]) -> list[Rule]:
        """Put records back exactly as they were, original ids included."""
        rules = dict(self._snapshot)
        restored = []
        for record in records:
            stored = record.copy()
            rules[stored.id] = stored
            restored.append(stored.copy())
        next_id = max([self._next_id] + [r.id + 1 for r in restored])
        self._commit(rules, next_id)
        return restored

    def mark_divergent(self, rule_ids: Iterable[int], divergent: bool = True) -> None:
        """Flag records whose backend state is uncertain."""
        rules = dict(self._snapshot)
        changed = False
        for rule_id in rule_ids:
            rule = rules.get(rule_id)
            if rule is not None and rule.divergent != divergent:
                rules[rule_id] = rule.copy(divergent=divergent)
                changed = True
        if changed:
            self._commit(rules, self._next_id)
