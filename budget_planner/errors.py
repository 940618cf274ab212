"""Error taxonomy for the budget planner engine.

Every failure the engine can report derives from :class:`PlannerError` so
callers can catch the whole family at the presentation boundary.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple


class PlannerError(Exception):
    """Base class for all budget planner errors."""


class ValidationError(PlannerError):
    """A command would violate a ledger invariant.

    Raised before any mutation happens; the ledger is left unchanged.
    """


class NothingToUndo(PlannerError):
    """The undo stack is empty."""


class NothingToRedo(PlannerError):
    """The redo stack is empty."""


class SyncFailure(PlannerError):
    """A command could not be persisted after all retries were exhausted."""

    def __init__(
        self,
        message: str,
        command_id: str,
        month: Optional[str] = None,
        category_ids: Sequence[str] = (),
    ):
        super().__init__(message)
        self.command_id = command_id
        self.month = month
        self.category_ids: Tuple[str, ...] = tuple(category_ids)


class ConflictOnReconcile(PlannerError):
    """The backend ledger moved since the local base snapshot."""

    def __init__(self, message: str, expected_revision: int, actual_revision: int):
        super().__init__(message)
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
