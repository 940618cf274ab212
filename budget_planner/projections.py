"""Read-only projections of engine state for presentation.

Views (tables, insight panels, footer status) consume these instead of
reaching into ledgers. Nothing here mutates engine state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from .engine import BudgetEngine
from .goals import Goal, GoalProjection, project_goal
from .models import Category, CategoryMonthFigures, MonthLedger
from .settings import get_config_value

FRAME_COLUMNS = [
    'category_id',
    'name',
    'group',
    'budgeted_cents',
    'activity_cents',
    'prev_available_cents',
    'available_cents',
    'rollover_enabled',
    'hidden',
]

_INT_COLUMNS = ['budgeted_cents', 'activity_cents', 'prev_available_cents', 'available_cents']


@dataclass(frozen=True)
class LedgerTotals:
    ready_to_assign_cents: int
    assigned_cents: int
    activity_cents: int
    available_cents: int
    income_cents: int

    def to_dict(self) -> Dict[str, int]:
        return {
            'readyToAssignCents': self.ready_to_assign_cents,
            'assignedCents': self.assigned_cents,
            'activityCents': self.activity_cents,
            'availableCents': self.available_cents,
            'incomeCents': self.income_cents,
        }


@dataclass(frozen=True)
class HistoryFlags:
    can_undo: bool
    can_redo: bool
    last_action_label: Optional[str]

    def to_dict(self) -> Dict[str, object]:
        return {
            'canUndo': self.can_undo,
            'canRedo': self.can_redo,
            'lastActionLabel': self.last_action_label,
        }


@dataclass(frozen=True)
class UnderfundedCategory:
    category: Category
    figures: CategoryMonthFigures
    projection: GoalProjection


def grouped_visible(ledger: MonthLedger) -> List[Tuple[str, List[CategoryMonthFigures]]]:
    """Visible figures grouped by category group, in display order.

    Returns:
        List of ``(group_name, figures)`` pairs; groups without visible
        categories are left out
    """
    groups: List[Tuple[str, List[CategoryMonthFigures]]] = []
    index: Dict[str, int] = {}
    for category, row in ledger.rows():
        if category.hidden:
            continue
        if category.group_id not in index:
            index[category.group_id] = len(groups)
            groups.append((category.group_name, []))
        groups[index[category.group_id]][1].append(row)
    return groups


def ledger_totals(ledger: MonthLedger) -> LedgerTotals:
    return LedgerTotals(
        ready_to_assign_cents=ledger.ready_to_assign_cents,
        assigned_cents=ledger.assigned_cents,
        activity_cents=ledger.activity_cents,
        available_cents=ledger.available_cents,
        income_cents=ledger.income_cents,
    )


def status_tone(totals: LedgerTotals) -> str:
    """Summarize totals as ``danger``, ``warning`` or ``success``.

    ``danger`` when the month is overspent overall, ``warning`` when
    activity has used most of what was assigned.
    """
    if totals.available_cents < 0:
        return 'danger'
    threshold = get_config_value('planner', 'status', 'warning_activity_percent', default=90)
    if totals.assigned_cents > 0 and totals.activity_cents * 100 > totals.assigned_cents * threshold:
        return 'warning'
    return 'success'


def underfunded(ledger: MonthLedger, goals: Mapping[str, Goal]) -> List[UnderfundedCategory]:
    """Visible categories whose goal still has a shortfall this month."""
    result = []
    for category, row in ledger.rows():
        if category.hidden:
            continue
        projection = project_goal(goals.get(category.id), row, ledger.month)
        if projection is not None and projection.shortfall_cents > 0:
            result.append(UnderfundedCategory(category, row, projection))
    return result


def ledger_frame(ledger: MonthLedger, include_hidden: bool = False) -> pd.DataFrame:
    """Tabular view of a ledger with integer cents columns.

    Args:
        ledger: Month to tabulate
        include_hidden: Whether hidden categories get rows

    Returns:
        DataFrame with :data:`FRAME_COLUMNS`, one row per category
    """
    records = [
        {
            'category_id': category.id,
            'name': category.name,
            'group': category.group_name,
            'budgeted_cents': row.budgeted_cents,
            'activity_cents': row.activity_cents,
            'prev_available_cents': row.prev_available_cents,
            'available_cents': row.available_cents,
            'rollover_enabled': row.rollover_enabled,
            'hidden': category.hidden,
        }
        for category, row in ledger.rows()
        if include_hidden or not category.hidden
    ]
    frame = pd.DataFrame.from_records(records, columns=FRAME_COLUMNS)
    for column in _INT_COLUMNS:
        frame[column] = frame[column].astype('int64')
    return frame


def history_flags(engine: BudgetEngine) -> HistoryFlags:
    return HistoryFlags(
        can_undo=engine.can_undo,
        can_redo=engine.can_redo,
        last_action_label=engine.last_action_label(),
    )


def month_view(engine: BudgetEngine, month: str) -> Dict[str, object]:
    """Everything a month screen needs, in one read."""
    ledger = engine.get_ledger(month)
    totals = ledger_totals(ledger)
    return {
        'month': month,
        'groups': grouped_visible(ledger),
        'hidden': engine.list_hidden(month),
        'totals': totals,
        'status': status_tone(totals),
        'underfunded': underfunded(ledger, engine.goals),
        'history': history_flags(engine),
    }
