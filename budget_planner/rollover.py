"""Rollover resolution.

A category's available balance for month M is::

    applied_prev = prev_available if rollover is on else 0
    available    = applied_prev + budgeted - activity

Negative balances carry forward like positive ones. The month before the
earliest loaded month is not known to the engine, so that month keeps the
``prev_available_cents`` and ``carried_ready_cents`` it was loaded with.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Mapping, Optional

from .models import CategoryMonthFigures, MonthLedger, previous_month


def compute_available(applied_prev_cents: int, budgeted_cents: int, activity_cents: int) -> int:
    return applied_prev_cents + budgeted_cents - activity_cents


def resolve_figures(
    figures: CategoryMonthFigures,
    prev_available_cents: Optional[int] = None,
) -> CategoryMonthFigures:
    """Recompute derived fields of one category's figures.

    Args:
        figures: Figures to resolve
        prev_available_cents: Prior month's final available balance, or None
            to keep the value already on ``figures``

    Returns:
        New figures with ``prev_available_cents`` and ``available_cents`` set.
        A ``starts_fresh`` row keeps the prior balance on record but carries
        none of it into ``available_cents``.
    """
    prev = figures.prev_available_cents if prev_available_cents is None else prev_available_cents
    resolved = replace(figures, prev_available_cents=prev)
    available = compute_available(
        resolved.applied_prev_cents,
        resolved.budgeted_cents,
        resolved.activity_cents,
    )
    if available == resolved.available_cents:
        return resolved
    return replace(resolved, available_cents=available)


def resolve_ledger(ledger: MonthLedger, prior: Optional[MonthLedger] = None) -> MonthLedger:
    """Recompute every category of ``ledger`` against the prior month.

    Categories missing from ``prior`` start from a zero balance.
    """
    if prior is None:
        figures = [resolve_figures(row) for row in ledger.figures]
        return ledger.with_figures(figures)

    prior_available = {row.category_id: row.available_cents for row in prior.figures}
    figures = [
        resolve_figures(row, prior_available.get(row.category_id, 0))
        for row in ledger.figures
    ]
    return replace(
        ledger,
        figures=tuple(figures),
        carried_ready_cents=prior.ready_to_assign_cents,
    )


def resolve_from(ledgers: Mapping[str, MonthLedger], start_month: str) -> Dict[str, MonthLedger]:
    """Resolve ``start_month`` and every later month, in order.

    Each month is resolved against its immediate predecessor when that month
    is loaded, so a change ripples through consecutive months only.

    Returns:
        A new mapping holding every ledger, with the recomputed ones replaced
    """
    resolved = dict(ledgers)
    for month in sorted(ledgers):
        if month < start_month:
            continue
        prior = resolved.get(previous_month(month))
        resolved[month] = resolve_ledger(ledgers[month], prior)
    return resolved
