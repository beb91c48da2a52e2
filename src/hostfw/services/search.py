"""Paginated search over the rule catalogue.

A filtered scan of the catalogue's last committed snapshot. It never
touches the backend and never takes the host lock.
"""

from dataclasses import dataclass, field
from typing import Optional

from hostfw.core.exceptions import ValidationError
from hostfw.services.catalogue import RuleCatalogue
from hostfw.services.rules import Rule, RuleKind, Strategy


ORDER_FIELDS = ("created_at", "updated_at", "id")
ORDER_DIRECTIONS = ("ascending", "descending")


@dataclass
class RuleFilter:
    """Search predicates; None means "any"."""
    kind: Optional[RuleKind] = None
    strategy: Optional[Strategy] = None
    enabled: Optional[bool] = None
    info: Optional[str] = None
    order_by: str = "created_at"
    order: str = "descending"

    def matches(self, rule: Rule) -> bool:
        """Check a rule against every predicate."""
        if self.kind is not None and rule.kind != self.kind:
            return False
        if self.strategy is not None and rule.strategy != self.strategy:
            return False
        if self.enabled is not None and rule.enabled != self.enabled:
            return False
        if self.info:
            needle = self.info.strip().lower()
            haystack = [
                rule.description,
                rule.address,
                rule.port_spec,
                rule.source_address,
            ]
            if not any(needle in value.lower() for value in haystack if value):
                return False
        return True


@dataclass
class SearchResult:
    """One page of search results."""
    total: int
    items: list[Rule] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"total": self.total, "items": [r.to_dict() for r in self.items]}


def search(
    catalogue: RuleCatalogue,
    rule_filter: Optional[RuleFilter] = None,
    page: int = 1,
    page_size: int = 20,
) -> SearchResult:
    """Filter, order and paginate catalogue rules.

    Args:
        catalogue: Rule catalogue to read
        rule_filter: Predicates and ordering (everything when None)
        page: 1-based page number
        page_size: Items per page

    Returns:
        SearchResult with the total match count and the requested page

    Raises:
        ValidationError: If paging or ordering arguments are invalid
    """
    rule_filter = rule_filter or RuleFilter()
    if page < 1:
        raise ValidationError(f"Invalid page: {page}", field="page", hint="Pages start at 1")
    if page_size < 1:
        raise ValidationError(
            f"Invalid page size: {page_size}",
            field="page_size",
            hint="Page size must be at least 1",
        )
    if rule_filter.order_by not in ORDER_FIELDS:
        raise ValidationError(
            f"Cannot order by {rule_filter.order_by}",
            field="order_by",
            hint=f"Valid values: {', '.join(ORDER_FIELDS)}",
        )
    if rule_filter.order not in ORDER_DIRECTIONS:
        raise ValidationError(
            f"Invalid order: {rule_filter.order}",
            field="order",
            hint=f"Valid values: {', '.join(ORDER_DIRECTIONS)}",
        )

    matched = [r for r in catalogue.all() if rule_filter.matches(r)]

    # Ties on the timestamp fall back to id, which keeps pages stable
    order_by = rule_filter.order_by
    matched.sort(
        key=lambda r: (getattr(r, order_by) or "", r.id) if order_by != "id" else (r.id,),
        reverse=rule_filter.order == "descending",
    )

    start = (page - 1) * page_size
    return SearchResult(total=len(matched), items=matched[start:start + page_size])
