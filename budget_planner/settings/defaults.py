"""JSON settings shipped next to this module.

Settings files are read once per process; callers get a freshly parsed
dict each time, so they may mutate it without affecting other readers.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

SETTINGS_DIR = Path(__file__).parent


@lru_cache(maxsize=None)
def _read(path: Path) -> str:
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


def load_config(config_name: str) -> Dict[str, Any]:
    """Parse ``<config_name>.json`` from the settings directory.

    Raises:
        FileNotFoundError: No settings file has that name
        json.JSONDecodeError: The file is not valid JSON
    """
    path = SETTINGS_DIR / f"{config_name}.json"
    if not path.exists():
        raise FileNotFoundError(f"No settings file named {config_name!r} in {SETTINGS_DIR}")
    return json.loads(_read(path))


def get_planner_config() -> Dict[str, Any]:
    return load_config('planner')


def get_config_value(config_name: str, *keys: str, default: Any = None) -> Any:
    """Look up ``keys`` one level at a time, e.g. ``('sync', 'max_retries')``.

    Missing files, missing keys and paths that run into a non-mapping all
    yield ``default``.
    """
    try:
        value: Any = load_config(config_name)
    except FileNotFoundError:
        return default
    for key in keys:
        if not isinstance(value, dict) or key not in value:
            return default
        value = value[key]
    return value
