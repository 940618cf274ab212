from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .commands import SyncPatch
from .config import DB_PATH, ensure_data_directories
from .errors import ConflictOnReconcile
from .goals import Goal
from .models import Category, CategoryMonthFigures, MonthLedger, Workspace

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS workspaces (
    workspace TEXT PRIMARY KEY,
    revision INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS categories (
    workspace TEXT NOT NULL,
    id TEXT NOT NULL,
    name TEXT NOT NULL,
    group_id TEXT NOT NULL,
    group_name TEXT NOT NULL,
    color TEXT,
    icon TEXT,
    rollover_enabled INTEGER NOT NULL DEFAULT 1,
    hidden INTEGER NOT NULL DEFAULT 0,
    group_sort INTEGER NOT NULL DEFAULT 0,
    sort INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (workspace, id)
);

CREATE TABLE IF NOT EXISTS month_income (
    workspace TEXT NOT NULL,
    month TEXT NOT NULL,
    income_cents INTEGER NOT NULL DEFAULT 0,
    carried_ready_cents INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (workspace, month)
);

CREATE TABLE IF NOT EXISTS month_figures (
    workspace TEXT NOT NULL,
    month TEXT NOT NULL,
    category_id TEXT NOT NULL,
    budgeted_cents INTEGER NOT NULL DEFAULT 0,
    activity_cents INTEGER NOT NULL DEFAULT 0,
    prev_available_cents INTEGER NOT NULL DEFAULT 0,
    available_cents INTEGER NOT NULL DEFAULT 0,
    rollover_enabled INTEGER NOT NULL DEFAULT 1,
    starts_fresh INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (workspace, month, category_id)
);

CREATE TABLE IF NOT EXISTS goals (
    workspace TEXT NOT NULL,
    category_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount_cents INTEGER NOT NULL,
    target_month TEXT,
    cadence TEXT,
    PRIMARY KEY (workspace, category_id)
);

CREATE TABLE IF NOT EXISTS patch_log (
    patch_id TEXT PRIMARY KEY,
    workspace TEXT NOT NULL,
    command_id TEXT NOT NULL,
    action TEXT NOT NULL,
    revision INTEGER NOT NULL,
    payload TEXT NOT NULL,
    applied_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_figures_month ON month_figures (workspace, month);
CREATE INDEX IF NOT EXISTS ix_patch_command ON patch_log (command_id);
"""

# Fields a patch may write, per table. Derived balances are never patched.
_CATEGORY_FIELDS = {'hidden', 'rollover_enabled'}
_FIGURE_FIELDS = {'budgeted_cents', 'rollover_enabled', 'starts_fresh'}
_BOOL_FIELDS = {'hidden', 'rollover_enabled', 'starts_fresh'}

PathLike = Union[str, Path]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_dirs(db_path: Path) -> None:
    if db_path == DB_PATH:
        ensure_data_directories()
    db_path.parent.mkdir(parents=True, exist_ok=True)


@contextmanager
def connect(db_path: Optional[PathLike] = None) -> Iterator[sqlite3.Connection]:
    path = Path(db_path) if db_path is not None else DB_PATH
    _ensure_dirs(path)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Optional[PathLike] = None) -> None:
    with connect(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()


def _db_value(field: str, value):
    return int(bool(value)) if field in _BOOL_FIELDS else value


class SQLiteBackend:
    """Persistence backend storing ledgers per workspace in SQLite.

    Every accepted patch is recorded in ``patch_log`` and bumps the
    workspace revision. Re-sending a recorded patch is a no-op, which makes
    retries safe; a patch built against a stale revision is rejected with
    :class:`ConflictOnReconcile`.
    """

    def __init__(self, db_path: Optional[PathLike] = None):
        self.db_path = Path(db_path) if db_path is not None else DB_PATH
        init_db(self.db_path)

    def _connect(self):
        return connect(self.db_path)

    # ------------------------------------------------------------------
    # Revisions
    # ------------------------------------------------------------------

    @staticmethod
    def _revision(conn: sqlite3.Connection, workspace: Workspace) -> int:
        row = conn.execute(
            "SELECT revision FROM workspaces WHERE workspace = ?", (workspace.key,)
        ).fetchone()
        return int(row['revision']) if row else 0

    @staticmethod
    def _bump(conn: sqlite3.Connection, workspace: Workspace) -> int:
        conn.execute(
            """
            INSERT INTO workspaces (workspace, revision, updated_at) VALUES (?, 1, ?)
            ON CONFLICT (workspace) DO UPDATE SET revision = revision + 1, updated_at = excluded.updated_at
            """,
            (workspace.key, _now()),
        )
        return SQLiteBackend._revision(conn, workspace)

    def revision(self, workspace: Workspace) -> int:
        with self._connect() as conn:
            return self._revision(conn, workspace)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_state(
        self,
        workspace: Workspace,
        categories: List[Category],
        ledgers: List[MonthLedger],
        goals: Optional[List[Goal]] = None,
    ) -> int:
        """Replace the stored state of ``workspace`` and return the new revision."""
        with self._connect() as conn:
            key = workspace.key
            for table in ('categories', 'month_income', 'month_figures', 'goals'):
                conn.execute(f"DELETE FROM {table} WHERE workspace = ?", (key,))
            conn.executemany(
                """
                INSERT INTO categories (workspace, id, name, group_id, group_name, color, icon,
                                        rollover_enabled, hidden, group_sort, sort)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (key, c.id, c.name, c.group_id, c.group_name, c.color, c.icon,
                     int(c.rollover_enabled), int(c.hidden), c.group_sort, c.sort)
                    for c in categories
                ],
            )
            for ledger in ledgers:
                conn.execute(
                    "INSERT INTO month_income (workspace, month, income_cents, carried_ready_cents) VALUES (?, ?, ?, ?)",
                    (key, ledger.month, ledger.income_cents, ledger.carried_ready_cents),
                )
                conn.executemany(
                    """
                    INSERT INTO month_figures (workspace, month, category_id, budgeted_cents, activity_cents,
                                               prev_available_cents, available_cents, rollover_enabled, starts_fresh)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (key, ledger.month, row.category_id, row.budgeted_cents, row.activity_cents,
                         row.prev_available_cents, row.available_cents,
                         int(row.rollover_enabled), int(row.starts_fresh))
                        for row in ledger.figures
                    ],
                )
            conn.executemany(
                "INSERT INTO goals (workspace, category_id, kind, amount_cents, target_month, cadence) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (key, g.category_id, g.kind.value, g.amount_cents, g.target_month, g.cadence)
                    for g in goals or []
                ],
            )
            revision = self._bump(conn, workspace)
            conn.commit()
        logger.info("Stored %d month(s) for %s at revision %d", len(ledgers), workspace.key, revision)
        return revision

    def record_activity(self, workspace: Workspace, month: str, category_id: str, activity_cents: int) -> None:
        """Store activity reported by the feed; not a user edit, so no revision bump."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO month_figures (workspace, month, category_id, activity_cents)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (workspace, month, category_id) DO UPDATE SET activity_cents = excluded.activity_cents
                """,
                (workspace.key, month, category_id, activity_cents),
            )
            conn.commit()

    def push(self, workspace: Workspace, patch: SyncPatch, expected_revision: Optional[int]) -> int:
        """Apply a command patch and return the workspace revision.

        Args:
            workspace: Identity scope of the patch
            patch: Patch emitted by the engine
            expected_revision: Revision the sender last saw; None skips the check

        Returns:
            The revision after the patch (unchanged for a duplicate patch)

        Raises:
            ConflictOnReconcile: If another writer moved the revision
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                seen = conn.execute(
                    "SELECT 1 FROM patch_log WHERE patch_id = ?", (patch.patch_id,)
                ).fetchone()
                current = self._revision(conn, workspace)
                if seen:
                    conn.rollback()
                    logger.debug("Patch %s already applied", patch.patch_id)
                    return current
                if expected_revision is not None and current != expected_revision:
                    conn.rollback()
                    raise ConflictOnReconcile(
                        f"Workspace {workspace.key} is at revision {current}, expected {expected_revision}",
                        expected_revision=expected_revision,
                        actual_revision=current,
                    )
                for change in patch.changes:
                    self._apply_change(conn, workspace, change.month, change.category_id, change.field, change.after)
                revision = self._bump(conn, workspace)
                conn.execute(
                    """
                    INSERT INTO patch_log (patch_id, workspace, command_id, action, revision, payload, applied_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (patch.patch_id, workspace.key, patch.command_id, patch.action.value,
                     revision, json.dumps(patch.to_dict(), sort_keys=True), _now()),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return revision

    @staticmethod
    def _apply_change(conn, workspace: Workspace, month, category_id: str, field: str, value) -> None:
        value = _db_value(field, value)
        if month is None:
            if field not in _CATEGORY_FIELDS:
                raise ValueError(f"Unsupported category field {field!r}")
            conn.execute(
                f"UPDATE categories SET {field} = ? WHERE workspace = ? AND id = ?",
                (value, workspace.key, category_id),
            )
            return
        if field not in _FIGURE_FIELDS:
            raise ValueError(f"Unsupported figures field {field!r}")
        conn.execute(
            f"""
            INSERT INTO month_figures (workspace, month, category_id, {field}) VALUES (?, ?, ?, ?)
            ON CONFLICT (workspace, month, category_id) DO UPDATE SET {field} = excluded.{field}
            """,
            (workspace.key, month, category_id, value),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_state(self, workspace: Workspace) -> Tuple[List[Category], List[MonthLedger]]:
        """Authoritative categories and ledgers, months in ascending order."""
        key = workspace.key
        with self._connect() as conn:
            categories = [
                Category(
                    id=row['id'],
                    name=row['name'],
                    group_id=row['group_id'],
                    group_name=row['group_name'],
                    color=row['color'],
                    icon=row['icon'],
                    rollover_enabled=bool(row['rollover_enabled']),
                    hidden=bool(row['hidden']),
                    group_sort=row['group_sort'],
                    sort=row['sort'],
                )
                for row in conn.execute("SELECT * FROM categories WHERE workspace = ?", (key,))
            ]
            months: Dict[str, Dict[str, int]] = {
                row['month']: {
                    'income_cents': row['income_cents'],
                    'carried_ready_cents': row['carried_ready_cents'],
                }
                for row in conn.execute("SELECT * FROM month_income WHERE workspace = ?", (key,))
            }
            figures: Dict[str, Dict[str, CategoryMonthFigures]] = {}
            for row in conn.execute("SELECT * FROM month_figures WHERE workspace = ?", (key,)):
                figures.setdefault(row['month'], {})[row['category_id']] = CategoryMonthFigures(
                    category_id=row['category_id'],
                    budgeted_cents=row['budgeted_cents'],
                    activity_cents=row['activity_cents'],
                    prev_available_cents=row['prev_available_cents'],
                    available_cents=row['available_cents'],
                    rollover_enabled=bool(row['rollover_enabled']),
                    starts_fresh=bool(row['starts_fresh']),
                )

        known = {c.id for c in categories}
        ledgers = []
        for month in sorted(set(months) | set(figures)):
            totals = months.get(month, {})
            ledgers.append(MonthLedger.build(
                month,
                categories,
                figures={cid: row for cid, row in figures.get(month, {}).items() if cid in known},
                income_cents=totals.get('income_cents', 0),
                carried_ready_cents=totals.get('carried_ready_cents', 0),
            ))
        return categories, ledgers

    def load_goals(self, workspace: Workspace) -> List[Goal]:
        with self._connect() as conn:
            return [
                Goal(
                    category_id=row['category_id'],
                    kind=row['kind'],
                    amount_cents=row['amount_cents'],
                    target_month=row['target_month'],
                    cadence=row['cadence'],
                )
                for row in conn.execute("SELECT * FROM goals WHERE workspace = ?", (workspace.key,))
            ]

    def patch_log(self, workspace: Workspace) -> List[SyncPatch]:
        """Accepted patches in the order they were applied."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM patch_log WHERE workspace = ? ORDER BY revision",
                (workspace.key,),
            ).fetchall()
        return [SyncPatch.from_dict(json.loads(row['payload'])) for row in rows]
