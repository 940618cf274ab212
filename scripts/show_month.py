#!/usr/bin/env python3
"""Print a persisted month ledger and its totals."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from budget_planner.db import SQLiteBackend
from budget_planner.engine import BudgetEngine
from budget_planner.errors import PlannerError
from budget_planner.formatting import format_cents, format_month_label
from budget_planner.models import Workspace, current_month
from budget_planner.projections import ledger_frame, ledger_totals, status_tone

MONEY_COLUMNS = ['budgeted_cents', 'activity_cents', 'prev_available_cents', 'available_cents']


def main(month: str, org: str, user: str, db_path: Optional[str] = None, show_hidden: bool = False) -> int:
    workspace = Workspace(org_id=org, user_id=user)
    backend = SQLiteBackend(db_path)
    categories, ledgers = backend.load_state(workspace)
    if not ledgers:
        print(f"No ledgers stored for {workspace.key}.")
        return 1

    try:
        engine = BudgetEngine(
            categories=categories,
            ledgers=ledgers,
            goals=backend.load_goals(workspace),
            workspace=workspace,
        )
        ledger = engine.get_ledger(month)
    except PlannerError as e:
        print(f"Error: {e}")
        return 1

    df = ledger_frame(ledger, include_hidden=show_hidden)
    for column in MONEY_COLUMNS:
        df[column] = df[column].map(format_cents)
    df = df.rename(columns={
        'name': 'Category',
        'group': 'Group',
        'budgeted_cents': 'Budgeted',
        'activity_cents': 'Activity',
        'prev_available_cents': 'Carried in',
        'available_cents': 'Available',
        'rollover_enabled': 'Rollover',
        'hidden': 'Hidden',
    }).drop(columns=['category_id'])
    if not show_hidden:
        df = df.drop(columns=['Hidden'])

    print(f"{format_month_label(month)} ({workspace.key})")
    print(df.to_string(index=False) if not df.empty else "(no visible categories)")

    totals = ledger_totals(ledger)
    print()
    print(f"Income:          {format_cents(totals.income_cents)}")
    print(f"Assigned:        {format_cents(totals.assigned_cents)}")
    print(f"Activity:        {format_cents(totals.activity_cents)}")
    print(f"Available:       {format_cents(totals.available_cents)}")
    print(f"Ready to assign: {format_cents(totals.ready_to_assign_cents)}")
    print(f"Status:          {status_tone(totals)}")
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Show a persisted budget month.')
    parser.add_argument('--month', default=current_month(), help='Month to show (YYYY-MM)')
    parser.add_argument('--org', default='default', help='Organization id')
    parser.add_argument('--user', default='default', help='User id')
    parser.add_argument('--db', default=None, help='SQLite database path (defaults to PLANNER_DB_PATH)')
    parser.add_argument('--show-hidden', action='store_true', help='Include hidden categories')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    sys.exit(main(args.month, args.org, args.user, db_path=args.db, show_hidden=args.show_hidden))
