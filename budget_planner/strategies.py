"""Bulk distribution strategies.

Each strategy is a pure function that looks at a month ledger (plus the
earlier months the engine has loaded) and returns a patch set mapping
category id to the new budgeted amount. Strategies only ever touch visible
categories; the engine turns a patch set into one atomic command.
"""

from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Collection, Dict, List, Mapping, Optional, Union

import pandas as pd

from .goals import Goal, goal_budget_target
from .models import MonthLedger, list_visible, previous_month, trailing_months
from .money import round_half_up, round_shares
from .settings import get_config_value

Patch = Dict[str, int]
History = Mapping[str, MonthLedger]

COPY_PREVIOUS_MONTH = 'copy_previous_month'
AVERAGE_ACTIVITY = 'average_activity'
SPENT_LAST_MONTH = 'spent_last_month'
AVERAGE_BUDGETED = 'average_budgeted'
FILL_GOALS = 'fill_goals'
BATCH_SET = 'batch_set'
BATCH_ADJUST = 'batch_adjust'
BATCH_ADJUST_PERCENT = 'batch_adjust_percent'

DEFAULT_TRAILING_MONTHS = get_config_value('planner', 'averages', 'trailing_months', default=3)


@dataclass(frozen=True)
class BudgetDiff:
    """One category's change under a proposed patch."""

    category_id: str
    name: str
    from_cents: int
    to_cents: int

    @property
    def delta_cents(self) -> int:
        return self.to_cents - self.from_cents


def _targets(ledger: MonthLedger, selection: Optional[Collection[str]]) -> List[str]:
    ids = [row.category_id for row in list_visible(ledger)]
    if selection is None:
        return ids
    wanted = set(selection)
    return [category_id for category_id in ids if category_id in wanted]


def history_frame(history: History, months: Collection[str], column: str) -> pd.DataFrame:
    """Flatten per-category figures of ``months`` into a long DataFrame.

    Args:
        history: Loaded ledgers keyed by month
        months: Months to include (missing ones are skipped)
        column: Figures attribute to extract, e.g. ``'activity_cents'``

    Returns:
        DataFrame with ``month``, ``category_id`` and integer ``value`` columns
    """
    records = [
        {'month': month, 'category_id': row.category_id, 'value': getattr(row, column)}
        for month in months
        if month in history
        for row in history[month].figures
    ]
    if not records:
        return pd.DataFrame({
            'month': pd.Series(dtype=object),
            'category_id': pd.Series(dtype=object),
            'value': pd.Series(dtype='int64'),
        })
    frame = pd.DataFrame.from_records(records)
    frame['value'] = frame['value'].astype('int64')
    return frame


def trailing_means(
    ledger: MonthLedger,
    history: History,
    column: str,
    months: int = DEFAULT_TRAILING_MONTHS,
) -> Dict[str, Fraction]:
    """Exact mean of ``column`` per category over the trailing months.

    A category averages over however many of the trailing months it appears
    in; categories with no history get no entry.
    """
    window = trailing_months(ledger.month, months)
    frame = history_frame(history, window, column)
    if frame.empty:
        return {}
    stats = frame.groupby('category_id')['value'].agg(['sum', 'count'])
    return {
        str(category_id): Fraction(int(row['sum']), max(1, int(row['count'])))
        for category_id, row in stats.iterrows()
    }


def _rounded_means(ids: List[str], means: Mapping[str, Fraction]) -> Patch:
    shares = [max(means.get(category_id, Fraction(0)), Fraction(0)) for category_id in ids]
    return dict(zip(ids, round_shares(shares)))


def copy_previous_month(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
) -> Patch:
    """Budget what each category was budgeted last month (0 if absent)."""
    previous = history.get(previous_month(ledger.month))
    budgeted = previous.budgeted_map() if previous else {}
    return {cid: budgeted.get(cid, 0) for cid in _targets(ledger, selection)}


def spent_last_month(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
) -> Patch:
    """Budget last month's spending; net inflows budget nothing."""
    previous = history.get(previous_month(ledger.month))
    activity = previous.activity_map() if previous else {}
    return {cid: max(activity.get(cid, 0), 0) for cid in _targets(ledger, selection)}


def average_activity(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
    months: int = DEFAULT_TRAILING_MONTHS,
) -> Patch:
    """Budget the rounded mean of the trailing months' activity.

    Rounding keeps the patch total equal to the rounded sum of the means;
    leftover cents go to the largest remainders, earlier categories first.
    """
    ids = _targets(ledger, selection)
    return _rounded_means(ids, trailing_means(ledger, history, 'activity_cents', months))


def average_budgeted(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
    months: int = DEFAULT_TRAILING_MONTHS,
) -> Patch:
    ids = _targets(ledger, selection)
    return _rounded_means(ids, trailing_means(ledger, history, 'budgeted_cents', months))


def fill_goals(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
    goals: Optional[Mapping[str, Goal]] = None,
) -> Patch:
    """Budget enough to fully fund each category's goal.

    Categories without a goal (or with a custom goal) are left out.
    """
    goals = goals or {}
    patch: Patch = {}
    for category_id in _targets(ledger, selection):
        target = goal_budget_target(goals.get(category_id), ledger.figures_for(category_id))
        if target is not None:
            patch[category_id] = target
    return patch


def batch_set(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
    value: int = 0,
) -> Patch:
    return {cid: max(value, 0) for cid in _targets(ledger, selection)}


def batch_adjust(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
    delta: int = 0,
) -> Patch:
    current = ledger.budgeted_map()
    return {cid: max(current[cid] + delta, 0) for cid in _targets(ledger, selection)}


def batch_adjust_percent(
    ledger: MonthLedger,
    history: History,
    selection: Optional[Collection[str]] = None,
    percent: Union[int, Fraction] = 0,
) -> Patch:
    """Scale budgeted amounts by ``percent`` (e.g. 10 for +10%)."""
    factor = 1 + Fraction(percent) / 100
    current = ledger.budgeted_map()
    return {
        cid: max(round_half_up(current[cid] * factor), 0)
        for cid in _targets(ledger, selection)
    }


STRATEGIES: Dict[str, Callable[..., Patch]] = {
    COPY_PREVIOUS_MONTH: copy_previous_month,
    AVERAGE_ACTIVITY: average_activity,
    SPENT_LAST_MONTH: spent_last_month,
    AVERAGE_BUDGETED: average_budgeted,
    FILL_GOALS: fill_goals,
    BATCH_SET: batch_set,
    BATCH_ADJUST: batch_adjust,
    BATCH_ADJUST_PERCENT: batch_adjust_percent,
}


def diff_patch(ledger: MonthLedger, patch: Mapping[str, int]) -> List[BudgetDiff]:
    """List the categories a patch would actually change, in display order."""
    diffs = []
    for category, row in ledger.rows():
        if category.id not in patch:
            continue
        target = patch[category.id]
        if target == row.budgeted_cents:
            continue
        diffs.append(BudgetDiff(category.id, category.name, row.budgeted_cents, target))
    return diffs
