"""Category funding goals and their monthly projections."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Optional

from .errors import ValidationError
from .models import CategoryMonthFigures, parse_month


class GoalKind(str, Enum):
    MONTHLY_FUNDING = 'MFG'
    TARGET_BALANCE = 'TB'
    TARGET_BALANCE_BY_DATE = 'TBD'
    CUSTOM = 'CUSTOM'


@dataclass(frozen=True)
class Goal:
    category_id: str
    kind: GoalKind
    amount_cents: int
    target_month: Optional[str] = None
    cadence: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.amount_cents, bool) or not isinstance(self.amount_cents, int):
            raise ValidationError(f"Goal amount for {self.category_id} must be integer cents")
        if self.amount_cents < 0:
            raise ValidationError(f"Goal amount for {self.category_id} cannot be negative")
        if self.target_month is not None:
            parse_month(self.target_month)
        object.__setattr__(self, 'kind', GoalKind(self.kind))


@dataclass(frozen=True)
class GoalProjection:
    needed_cents: int
    shortfall_cents: int
    budgeted_cents: int
    progress: Fraction
    target_cents: int


def _months_between(start: str, end: str) -> int:
    start_year, start_month = parse_month(start)
    end_year, end_month = parse_month(end)
    return (end_year * 12 + end_month) - (start_year * 12 + start_month)


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def project_goal(
    goal: Optional[Goal],
    figures: Optional[CategoryMonthFigures],
    month: str,
) -> Optional[GoalProjection]:
    """Project how much a category still needs this month to stay on track.

    Args:
        goal: The category's goal, if any
        figures: The category's figures for ``month``
        month: Month being projected (``YYYY-MM``)

    Returns:
        The projection, or None when there is no goal/figures or a dated
        goal has no target month
    """
    if goal is None or figures is None:
        return None
    budgeted = figures.budgeted_cents
    available = figures.available_cents
    target = goal.amount_cents

    if goal.kind is GoalKind.MONTHLY_FUNDING or goal.kind is GoalKind.CUSTOM:
        needed = max(target - budgeted, 0)
    elif goal.kind is GoalKind.TARGET_BALANCE:
        needed = max(target - available, 0)
    else:
        if goal.target_month is None:
            return None
        remaining = _months_between(month, goal.target_month)
        if remaining < 0:
            needed = 0
        else:
            needed = _ceil_div(max(target - available, 0), max(1, remaining + 1))

    shortfall = max(needed - budgeted, 0)
    progress = Fraction(1) if target == 0 else min(Fraction(available, target), Fraction(1))
    return GoalProjection(
        needed_cents=needed,
        shortfall_cents=shortfall,
        budgeted_cents=budgeted,
        progress=progress,
        target_cents=target,
    )


def goal_budget_target(goal: Optional[Goal], figures: CategoryMonthFigures) -> Optional[int]:
    """Budgeted amount that fully funds ``goal`` this month.

    Monthly goals budget their amount; balance goals budget enough to reach
    the target after this month's activity. Custom goals have no automatic
    target.
    """
    if goal is None:
        return None
    if goal.kind is GoalKind.MONTHLY_FUNDING:
        return goal.amount_cents
    if goal.kind in (GoalKind.TARGET_BALANCE, GoalKind.TARGET_BALANCE_BY_DATE):
        return max(goal.amount_cents + figures.activity_cents - figures.applied_prev_cents, 0)
    return None
