"""Reversible commands and the patches sent to persistence.

A :class:`Command` starts as an intent (``params``). When the engine applies
it, the engine records the exact field changes it made, which is all that is
needed to undo, redo, or revert it later.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .settings import get_config_value


class CommandKind(str, Enum):
    SET_BUDGETED = 'SetBudgeted'
    TOGGLE_ROLLOVER = 'ToggleRollover'
    HIDE_CATEGORY = 'HideCategory'
    UNHIDE_CATEGORY = 'UnhideCategory'
    BULK_DISTRIBUTE = 'BulkDistribute'


class CommandState(str, Enum):
    PENDING = 'Pending'
    APPLIED = 'Applied'
    COMMITTED = 'Committed'
    ROLLED_BACK = 'RolledBack'
    REVERTED = 'Reverted'


class PatchAction(str, Enum):
    APPLY = 'apply'
    UNDO = 'undo'
    REDO = 'redo'


@dataclass(frozen=True)
class FieldChange:
    """A single field write.

    ``month`` is None for category-level fields (``hidden``,
    ``rollover_enabled`` on the category itself).
    """

    month: Optional[str]
    category_id: str
    field: str
    before: Any
    after: Any

    def inverted(self) -> 'FieldChange':
        return FieldChange(self.month, self.category_id, self.field, self.after, self.before)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'category_id': self.category_id,
            'field': self.field,
            'before': self.before,
            'after': self.after,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FieldChange':
        return cls(
            month=data.get('month'),
            category_id=data['category_id'],
            field=data['field'],
            before=data.get('before'),
            after=data.get('after'),
        )


@dataclass
class Command:
    kind: CommandKind
    target_month: str
    params: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: CommandState = CommandState.PENDING
    changes: Tuple[FieldChange, ...] = ()
    label: str = ''
    revision: int = 0
    committed: bool = False

    # -- constructors -----------------------------------------------------

    @classmethod
    def set_budgeted(cls, month: str, category_id: str, budgeted_cents: Any) -> 'Command':
        return cls(CommandKind.SET_BUDGETED, month, {
            'category_id': category_id,
            'budgeted_cents': budgeted_cents,
        })

    @classmethod
    def toggle_rollover(cls, month: str, category_id: str, enabled: Optional[bool] = None) -> 'Command':
        return cls(CommandKind.TOGGLE_ROLLOVER, month, {
            'category_id': category_id,
            'enabled': enabled,
        })

    @classmethod
    def hide_category(cls, month: str, category_id: str) -> 'Command':
        return cls(CommandKind.HIDE_CATEGORY, month, {'category_id': category_id})

    @classmethod
    def unhide_category(cls, month: str, category_id: str) -> 'Command':
        return cls(CommandKind.UNHIDE_CATEGORY, month, {'category_id': category_id})

    @classmethod
    def bulk_distribute(cls, month: str, patch: Mapping[str, int], strategy: str) -> 'Command':
        return cls(CommandKind.BULK_DISTRIBUTE, month, {
            'patch': dict(patch),
            'strategy': strategy,
        })

    def fresh_copy(self) -> 'Command':
        """A new pending command with the same intent."""
        params = dict(self.params)
        if 'patch' in params:
            params['patch'] = dict(params['patch'])
        return Command(self.kind, self.target_month, params)

    # -- queries ----------------------------------------------------------

    @property
    def category_id(self) -> Optional[str]:
        return self.params.get('category_id')

    @property
    def category_ids(self) -> List[str]:
        if self.kind is CommandKind.BULK_DISTRIBUTE:
            return list(self.params.get('patch', {}))
        return [self.params['category_id']]

    def next_patch(self, action: PatchAction) -> 'SyncPatch':
        """Bump the revision and describe the transition for persistence."""
        self.revision += 1
        self.committed = False
        changes = self.changes if action is not PatchAction.UNDO else tuple(
            change.inverted() for change in reversed(self.changes)
        )
        return SyncPatch(
            patch_id=f"{self.id}:{self.revision}",
            command_id=self.id,
            revision=self.revision,
            kind=self.kind,
            action=action,
            target_month=self.target_month,
            category_id=self.category_id,
            fields=summarize_fields(
                changes,
                self.target_month,
                per_category=self.kind is CommandKind.BULK_DISTRIBUTE,
            ),
            changes=changes,
        )


def summarize_fields(
    changes: Tuple[FieldChange, ...],
    target_month: str,
    per_category: bool = False,
) -> Dict[str, Any]:
    """Collapse changes into the ``fields`` block of a patch.

    Category-level and target-month fields map to their new value; bulk
    budget edits map ``budgeted_cents`` to a per-category dict.
    """
    fields: Dict[str, Any] = {}
    budgets: Dict[str, int] = {}
    for change in changes:
        if change.month not in (None, target_month):
            continue
        if change.field == 'budgeted_cents':
            budgets[change.category_id] = change.after
        else:
            fields[change.field] = change.after
    if budgets and not per_category:
        fields['budgeted_cents'] = next(iter(budgets.values()))
    elif budgets:
        fields['budgeted_cents'] = budgets
    return fields


@dataclass(frozen=True)
class SyncPatch:
    """Serializable, idempotent description of one command transition.

    ``changes`` carry absolute values, so re-sending a patch never
    double-applies it; ``patch_id`` lets the backend skip duplicates.
    """

    patch_id: str
    command_id: str
    revision: int
    kind: CommandKind
    action: PatchAction
    target_month: str
    category_id: Optional[str]
    fields: Dict[str, Any]
    changes: Tuple[FieldChange, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'patch_id': self.patch_id,
            'command_id': self.command_id,
            'revision': self.revision,
            'kind': self.kind.value,
            'action': self.action.value,
            'target_month': self.target_month,
            'category_id': self.category_id,
            'fields': self.fields,
            'changes': [change.to_dict() for change in self.changes],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SyncPatch':
        return cls(
            patch_id=data['patch_id'],
            command_id=data['command_id'],
            revision=int(data['revision']),
            kind=CommandKind(data['kind']),
            action=PatchAction(data['action']),
            target_month=data['target_month'],
            category_id=data.get('category_id'),
            fields=dict(data.get('fields') or {}),
            changes=tuple(FieldChange.from_dict(c) for c in data.get('changes') or ()),
        )


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


def _labels() -> Dict[str, Any]:
    return get_config_value('planner', 'labels', default={}) or {}


def strategy_label(strategy: str) -> str:
    return _labels().get('strategies', {}).get(strategy, strategy.replace('_', ' ').capitalize())


def describe(command: Command, category_name: Optional[str] = None) -> str:
    """Human-readable description of a command for status display."""
    templates = _labels().get('commands', {})
    name = category_name or command.category_id or ''
    if command.kind is CommandKind.SET_BUDGETED:
        key = 'set_budgeted'
    elif command.kind is CommandKind.TOGGLE_ROLLOVER:
        enabled = next(
            (c.after for c in command.changes if c.month is None and c.field == 'rollover_enabled'),
            command.params.get('enabled'),
        )
        key = 'toggle_rollover_on' if enabled else 'toggle_rollover_off'
    elif command.kind is CommandKind.HIDE_CATEGORY:
        key = 'hide_category'
    elif command.kind is CommandKind.UNHIDE_CATEGORY:
        key = 'unhide_category'
    else:
        template = templates.get('bulk_distribute', '{strategy} ({count})')
        return template.format(
            strategy=strategy_label(command.params.get('strategy', '')),
            count=len(command.params.get('patch', {})),
        )
    template = templates.get(key, command.kind.value + ' {category}')
    return template.format(category=name)
