"""Category and month ledger records.

These are the tagged records every other component passes around. All of
them are frozen: the engine produces new snapshots instead of mutating
existing ones, so a snapshot handed to a view never changes underneath it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ValidationError

_MONTH_RE = re.compile(r'^(\d{4})-(\d{2})$')

MONEY_FIELDS = ('budgeted_cents', 'activity_cents', 'prev_available_cents', 'available_cents')


# ---------------------------------------------------------------------------
# Month keys
# ---------------------------------------------------------------------------


def parse_month(month: str) -> Tuple[int, int]:
    """Split a ``YYYY-MM`` key into ``(year, month)``.

    Raises:
        ValidationError: If the key is malformed or the month is out of range
    """
    match = _MONTH_RE.match(month or '')
    if not match:
        raise ValidationError(f"Invalid month key: {month!r} (expected YYYY-MM)")
    year, number = int(match.group(1)), int(match.group(2))
    if not 1 <= number <= 12:
        raise ValidationError(f"Invalid month key: {month!r} (month out of range)")
    return year, number


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def current_month(today: Optional[date] = None) -> str:
    today = today or date.today()
    return month_key(today.year, today.month)


def previous_month(month: str) -> str:
    year, number = parse_month(month)
    if number == 1:
        return month_key(year - 1, 12)
    return month_key(year, number - 1)


def next_month(month: str) -> str:
    year, number = parse_month(month)
    if number == 12:
        return month_key(year + 1, 1)
    return month_key(year, number + 1)


def trailing_months(month: str, count: int) -> List[str]:
    """Return the ``count`` months before ``month``, most recent first."""
    months = []
    cursor = month
    for _ in range(count):
        cursor = previous_month(cursor)
        months.append(cursor)
    return months


def _require_cents(owner: str, name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"{owner}.{name} must be integer cents, got {type(value).__name__}"
        )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Workspace:
    """Identity scope supplied by the session layer.

    Ledgers are loaded and persisted per (organization, user) pair.
    """

    org_id: str
    user_id: str

    @property
    def key(self) -> str:
        return f"{self.org_id}:{self.user_id}"


@dataclass(frozen=True)
class Category:
    """Static shape of a budget category.

    ``group_sort`` and ``sort`` define display order: groups first, then the
    categories inside each group.
    """

    id: str
    name: str
    group_id: str
    group_name: str
    color: Optional[str] = None
    icon: Optional[str] = None
    rollover_enabled: bool = True
    hidden: bool = False
    group_sort: int = 0
    sort: int = 0

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("Category id cannot be empty")
        if not isinstance(self.rollover_enabled, bool) or not isinstance(self.hidden, bool):
            raise ValidationError(f"Category {self.id} flags must be booleans")


@dataclass(frozen=True)
class CategoryMonthFigures:
    """Figures of one category in one month.

    ``rollover_enabled`` is the flag in force for this month: when it is off
    the prior balance is dropped instead of carried in. ``starts_fresh``
    makes the applied carry-in zero (used when a hidden category comes back)
    while ``prev_available_cents`` still records the prior balance.
    ``prev_available_cents`` and ``available_cents`` are derived by the
    rollover resolver and are never set directly by commands.
    """

    category_id: str
    budgeted_cents: int = 0
    activity_cents: int = 0
    prev_available_cents: int = 0
    available_cents: int = 0
    rollover_enabled: bool = True
    starts_fresh: bool = False

    def __post_init__(self) -> None:
        for name in MONEY_FIELDS:
            _require_cents('CategoryMonthFigures', name, getattr(self, name))

    @property
    def applied_prev_cents(self) -> int:
        if self.starts_fresh or not self.rollover_enabled:
            return 0
        return self.prev_available_cents


def display_order(categories: Iterable[Category]) -> List[Category]:
    """Sort categories by group position, then position inside the group."""
    return sorted(
        categories,
        key=lambda c: (c.group_sort, c.group_name, c.sort, c.name, c.id),
    )


@dataclass(frozen=True)
class MonthLedger:
    """All categories' figures for one calendar month.

    ``categories`` and ``figures`` are parallel tuples in display order.
    ``carried_ready_cents`` is the unassigned income carried in from earlier
    months, so ``ready_to_assign_cents`` is cumulative.
    """

    month: str
    income_cents: int = 0
    categories: Tuple[Category, ...] = ()
    figures: Tuple[CategoryMonthFigures, ...] = ()
    carried_ready_cents: int = 0

    def __post_init__(self) -> None:
        parse_month(self.month)
        _require_cents('MonthLedger', 'income_cents', self.income_cents)
        _require_cents('MonthLedger', 'carried_ready_cents', self.carried_ready_cents)
        if len(self.categories) != len(self.figures):
            raise ValidationError(f"Ledger {self.month} has mismatched categories and figures")
        seen = set()
        for category, figures in zip(self.categories, self.figures):
            if category.id != figures.category_id:
                raise ValidationError(
                    f"Ledger {self.month} pairs {category.id} with figures for {figures.category_id}"
                )
            if category.id in seen:
                raise ValidationError(f"Ledger {self.month} lists category {category.id} twice")
            seen.add(category.id)

    @classmethod
    def build(
        cls,
        month: str,
        categories: Iterable[Category],
        figures: Optional[Mapping[str, CategoryMonthFigures]] = None,
        income_cents: int = 0,
        carried_ready_cents: int = 0,
    ) -> 'MonthLedger':
        """Assemble a ledger in display order.

        Categories without figures get zeroed figures that inherit the
        category's rollover flag.
        """
        figures = figures or {}
        ordered = display_order(categories)
        rows = []
        for category in ordered:
            row = figures.get(category.id)
            if row is None:
                row = CategoryMonthFigures(
                    category_id=category.id,
                    rollover_enabled=category.rollover_enabled,
                )
            rows.append(row)
        return cls(
            month=month,
            income_cents=income_cents,
            categories=tuple(ordered),
            figures=tuple(rows),
            carried_ready_cents=carried_ready_cents,
        )

    # -- lookups ----------------------------------------------------------

    def index_of(self, category_id: str) -> int:
        for i, category in enumerate(self.categories):
            if category.id == category_id:
                return i
        raise ValidationError(f"Unknown category {category_id!r} in {self.month}")

    def has_category(self, category_id: str) -> bool:
        return any(c.id == category_id for c in self.categories)

    def category(self, category_id: str) -> Category:
        return self.categories[self.index_of(category_id)]

    def figures_for(self, category_id: str) -> CategoryMonthFigures:
        return self.figures[self.index_of(category_id)]

    def get_figures(self, category_id: str) -> Optional[CategoryMonthFigures]:
        for row in self.figures:
            if row.category_id == category_id:
                return row
        return None

    def rows(self) -> List[Tuple[Category, CategoryMonthFigures]]:
        return list(zip(self.categories, self.figures))

    def budgeted_map(self) -> Dict[str, int]:
        return {row.category_id: row.budgeted_cents for row in self.figures}

    def activity_map(self) -> Dict[str, int]:
        return {row.category_id: row.activity_cents for row in self.figures}

    # -- aggregates -------------------------------------------------------

    @property
    def assigned_cents(self) -> int:
        return sum(row.budgeted_cents for row in self.figures)

    @property
    def activity_cents(self) -> int:
        return sum(row.activity_cents for row in self.figures)

    @property
    def available_cents(self) -> int:
        return sum(row.available_cents for row in self.figures)

    @property
    def ready_to_assign_cents(self) -> int:
        return self.carried_ready_cents + self.income_cents - self.assigned_cents

    # -- copies -----------------------------------------------------------

    def with_figures(self, figures: Sequence[CategoryMonthFigures]) -> 'MonthLedger':
        return replace(self, figures=tuple(figures))

    def with_categories(self, categories: Sequence[Category]) -> 'MonthLedger':
        return replace(self, categories=tuple(categories))


def list_visible(ledger: MonthLedger) -> List[CategoryMonthFigures]:
    """Figures of non-hidden categories, in display order."""
    return [row for category, row in ledger.rows() if not category.hidden]


def list_hidden(ledger: MonthLedger) -> List[CategoryMonthFigures]:
    """Figures of hidden categories, in display order."""
    return [row for category, row in ledger.rows() if category.hidden]
