"""Top-level package for the Budget Planner.

This package owns per-category monthly budget state and everything derived
from it.  The primary modules are:

* ``engine`` - the single writer of ledger state, with undo/redo history
* ``strategies`` - bulk distribution ("quick budget") strategies
* ``sync`` - background persistence of engine commands
* ``projections`` - read-only views for tables and status displays

Persisted ledgers can be inspected from the command line:

```bash
python scripts/show_month.py --month 2025-05
```
"""

from .commands import Command, CommandKind, CommandState
from .engine import BudgetEngine
from .errors import (
    ConflictOnReconcile,
    NothingToRedo,
    NothingToUndo,
    PlannerError,
    SyncFailure,
    ValidationError,
)
from .goals import Goal, GoalKind
from .models import Category, CategoryMonthFigures, MonthLedger, Workspace
from .money import Money

__all__ = [
    "BudgetEngine",
    "Category",
    "CategoryMonthFigures",
    "Command",
    "CommandKind",
    "CommandState",
    "ConflictOnReconcile",
    "Goal",
    "GoalKind",
    "Money",
    "MonthLedger",
    "NothingToRedo",
    "NothingToUndo",
    "PlannerError",
    "SyncFailure",
    "ValidationError",
    "Workspace",
]
