"""Configuration management for the budget planner.

This module centralizes filesystem locations and environment variable
overrides. Tunable behaviour (history depth, retry policy, labels) lives in
the JSON settings under ``budget_planner/settings``.
"""

from __future__ import annotations

import os
from pathlib import Path

# Base project root - assumes this file is in budget_planner/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("PLANNER_DATA_DIR", _PROJECT_ROOT / "data"))
SNAPSHOTS_DIR = Path(os.getenv("PLANNER_SNAPSHOTS_DIR", DATA_DIR / "snapshots"))

# Database
DB_PATH = Path(
    os.getenv("PLANNER_DB_PATH", DATA_DIR / "planner.db")
).resolve()


def ensure_data_directories() -> None:
    """Create all required data directories if they don't exist."""
    for directory in [DATA_DIR, SNAPSHOTS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)
