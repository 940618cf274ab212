"""Ledger snapshot storage and file I/O operations.

This module exports the engine's full state (categories, months, goals) to
JSON files and loads it back. Derived balances are written for readability
but recomputed on load.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import SNAPSHOTS_DIR, ensure_data_directories
from .engine import BudgetEngine
from .errors import ValidationError
from .goals import Goal
from .models import Category, CategoryMonthFigures, MonthLedger, Workspace

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def safe_filename(name: str, default: str = 'snapshot') -> str:
    """Reduce a snapshot name to characters safe for file systems.

    Example:
        >>> safe_filename("May 2025 / draft!")
        'May_2025_draft'
    """
    cleaned = ''.join(c for c in name or '' if c.isalnum() or c in {' ', '_', '-'})
    cleaned = '_'.join(cleaned.split())
    while '__' in cleaned:
        cleaned = cleaned.replace('__', '_')
    cleaned = cleaned.strip('_')
    return cleaned or default


def serialize_state(engine: BudgetEngine) -> Dict[str, Any]:
    """Dump engine state to plain JSON-compatible data."""
    months = []
    for month in engine.months:
        ledger = engine.get_ledger(month)
        months.append({
            'month': ledger.month,
            'income_cents': ledger.income_cents,
            'carried_ready_cents': ledger.carried_ready_cents,
            'figures': [asdict(row) for row in ledger.figures],
        })
    goals = []
    for goal in engine.goals.values():
        data = asdict(goal)
        data['kind'] = goal.kind.value
        goals.append(data)
    workspace = engine.workspace
    return {
        'workspace': asdict(workspace) if workspace else None,
        'categories': [asdict(category) for category in engine.categories],
        'months': months,
        'goals': goals,
    }


def deserialize_state(
    data: Mapping[str, Any],
) -> Tuple[List[Category], List[MonthLedger], List[Goal], Optional[Workspace]]:
    """Rebuild records from :func:`serialize_state` output.

    Raises:
        ValidationError: If the payload is structurally invalid
    """
    try:
        categories = [Category(**entry) for entry in data.get('categories') or []]
        ledgers = []
        for entry in data.get('months') or []:
            figures = {
                row['category_id']: CategoryMonthFigures(**row)
                for row in entry.get('figures') or []
            }
            ledgers.append(MonthLedger.build(
                entry['month'],
                categories,
                figures=figures,
                income_cents=entry.get('income_cents', 0),
                carried_ready_cents=entry.get('carried_ready_cents', 0),
            ))
        goals = [Goal(**entry) for entry in data.get('goals') or []]
        workspace_data = data.get('workspace')
        workspace = Workspace(**workspace_data) if workspace_data else None
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid ledger snapshot: {e}") from e
    return categories, ledgers, goals, workspace


class LedgerStorage:
    """Handles ledger snapshot file storage operations."""

    def __init__(self, snapshots_dir: Optional[Path] = None):
        """Initialize snapshot storage.

        Args:
            snapshots_dir: Optional custom directory for snapshot files.
                Defaults to SNAPSHOTS_DIR from config.
        """
        if snapshots_dir is None:
            ensure_data_directories()
        self.snapshots_dir = Path(snapshots_dir or SNAPSHOTS_DIR)
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)

    def get_path(self, name: str) -> Path:
        return self.snapshots_dir / f"{safe_filename(name)}.json"

    def save(self, name: str, engine: BudgetEngine) -> Path:
        """Write the engine's state to disk.

        Args:
            name: Snapshot name
            engine: Engine to export

        Returns:
            Path of the written file

        Raises:
            ValueError: If the snapshot name is empty
            OSError: If the file cannot be written
        """
        if not name or not name.strip():
            raise ValueError("Snapshot name cannot be empty")

        payload = serialize_state(engine)
        payload.update({
            'name': name.strip(),
            'saved_at': datetime.now(timezone.utc).isoformat(),
            'version': SNAPSHOT_VERSION,
        })

        target = self.get_path(name)
        try:
            with target.open('w', encoding='utf-8') as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
        except OSError as e:
            raise OSError(f"Failed to save snapshot to {target}: {e}") from e
        logger.info("Saved snapshot %s (%d months)", target.name, len(payload['months']))
        return target

    def load(self, name: str, max_history: Optional[int] = None) -> BudgetEngine:
        """Load a snapshot into a fresh engine with empty history.

        Raises:
            FileNotFoundError: If no snapshot has this name
            ValidationError: If the file is not a valid snapshot
        """
        target = self.get_path(name)
        if not target.exists():
            raise FileNotFoundError(f"Snapshot not found: {target}")
        try:
            with target.open('r', encoding='utf-8') as handle:
                data = json.load(handle)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Snapshot {target.name} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Snapshot {target.name} is not an object")

        categories, ledgers, goals, workspace = deserialize_state(data)
        return BudgetEngine(
            categories=categories,
            ledgers=ledgers,
            goals=goals,
            workspace=workspace,
            max_history=max_history,
        )

    def load_all(self) -> Dict[str, Dict[str, Any]]:
        """Summaries of every readable snapshot, keyed by file stem.

        Note:
            Snapshots with invalid or unreadable data are skipped with a
            warning.
        """
        snapshots: Dict[str, Dict[str, Any]] = {}
        if not self.snapshots_dir.exists():
            return snapshots

        for snapshot_file in sorted(self.snapshots_dir.glob('*.json')):
            name = snapshot_file.stem
            try:
                with snapshot_file.open('r', encoding='utf-8') as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Could not load snapshot '%s': %s", name, e)
                continue
            if not isinstance(data, dict):
                logger.warning("Skipping snapshot '%s': not an object", name)
                continue

            snapshots[name] = {
                'name': data.get('name', name),
                'months': [m.get('month') for m in data.get('months') or [] if isinstance(m, dict)],
                'categories': len(data.get('categories') or []),
                'saved_at': data.get('saved_at'),
                'version': data.get('version', 1),
            }
        return snapshots

    def delete(self, name: str) -> None:
        """Delete a snapshot file; missing files are ignored.

        Raises:
            ValueError: If the snapshot name is empty
            OSError: If the file cannot be deleted
        """
        if not name or not name.strip():
            raise ValueError("Snapshot name cannot be empty")

        target = self.get_path(name)
        if not target.exists():
            return
        try:
            target.unlink()
        except OSError as e:
            raise OSError(f"Failed to delete snapshot file {target}: {e}") from e
