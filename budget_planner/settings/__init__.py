"""Planner settings files and loaders.

Settings are stored in JSON files next to this module so limits, retry
policy and user-facing labels can change without code changes.
"""

from .defaults import load_config, get_planner_config, get_config_value

__all__ = ['load_config', 'get_planner_config', 'get_config_value']
