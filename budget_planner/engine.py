"""Budget planner engine.

The engine is the single writer of ledger state. Every user edit goes
through :meth:`BudgetEngine.apply` as a reversible :class:`Command`;
activity, income and new categories arrive from outside through dedicated
entry points and are never part of the undo history. Consumers read frozen
snapshots and subscribe for change notifications instead of keeping
copies they mutate themselves.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Sequence

from .commands import (
    Command,
    CommandKind,
    CommandState,
    FieldChange,
    PatchAction,
    SyncPatch,
    describe,
)
from .errors import ConflictOnReconcile, NothingToRedo, NothingToUndo, PlannerError, SyncFailure, ValidationError
from .goals import Goal
from .models import (
    Category,
    CategoryMonthFigures,
    MonthLedger,
    Workspace,
    display_order,
    list_hidden,
    list_visible,
    next_month,
    parse_month,
)
from .money import Money
from .rollover import resolve_from
from .settings import get_config_value
from .strategies import FILL_GOALS, STRATEGIES, BudgetDiff, diff_patch

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]
PatchListener = Callable[[SyncPatch], None]

DEFAULT_MAX_HISTORY = get_config_value('planner', 'history', 'max_depth', default=50)


class BudgetEngine:
    """Owns categories, month ledgers and the undo/redo history.

    Args:
        categories: Categories known to the workspace
        ledgers: Month ledgers to load; each is completed with zero figures
            for categories it lacks and resolved in month order
        goals: Category goals consulted by goal projections and strategies
        workspace: Identity scope the ledgers belong to
        max_history: Maximum undo depth (defaults to the configured value)

    Raises:
        ValidationError: If ``max_history`` is below 1
    """

    def __init__(
        self,
        categories: Iterable[Category] = (),
        ledgers: Iterable[MonthLedger] = (),
        goals: Iterable[Goal] = (),
        workspace: Optional[Workspace] = None,
        max_history: Optional[int] = None,
    ):
        self.workspace = workspace
        self.max_history = DEFAULT_MAX_HISTORY if max_history is None else max_history
        if self.max_history < 1:
            raise ValidationError(f"max_history must be at least 1, got {self.max_history}")
        self._categories: Dict[str, Category] = {}
        self._ledgers: Dict[str, MonthLedger] = {}
        self._goals: Dict[str, Goal] = {goal.category_id: goal for goal in goals}
        self._undo: List[Command] = []
        self._redo: List[Command] = []
        self._commands: Dict[str, Command] = {}
        self._listeners: List[Listener] = []
        self._patch_listeners: List[PatchListener] = []
        self._last_action: Optional[str] = None
        self.last_condition: Optional[PlannerError] = None
        self.failures: List[PlannerError] = []
        self.awaiting_confirmation: List[Command] = []
        self._load(categories, ledgers)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, categories: Iterable[Category], ledgers: Iterable[MonthLedger]) -> None:
        self._categories = {}
        for category in categories:
            if category.id in self._categories:
                raise ValidationError(f"Duplicate category id {category.id!r}")
            self._categories[category.id] = category

        loaded: Dict[str, MonthLedger] = {}
        for ledger in ledgers:
            if ledger.month in loaded:
                raise ValidationError(f"Month {ledger.month} loaded twice")
            for row in ledger.figures:
                if row.category_id not in self._categories:
                    raise ValidationError(
                        f"Ledger {ledger.month} references unknown category {row.category_id!r}"
                    )
            loaded[ledger.month] = self._rebuild(ledger)
        self._ledgers = loaded
        if loaded:
            self._recompute(min(loaded))

    def _rebuild(self, ledger: MonthLedger) -> MonthLedger:
        """Re-pair ``ledger`` with the engine's current categories."""
        return MonthLedger.build(
            ledger.month,
            self._categories.values(),
            figures={row.category_id: row for row in ledger.figures},
            income_cents=ledger.income_cents,
            carried_ready_cents=ledger.carried_ready_cents,
        )

    def _recompute(self, start_month: str) -> None:
        self._ledgers = resolve_from(self._ledgers, start_month)

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    @property
    def months(self) -> List[str]:
        return sorted(self._ledgers)

    @property
    def categories(self) -> List[Category]:
        return display_order(self._categories.values())

    @property
    def ledgers(self) -> Dict[str, MonthLedger]:
        return dict(self._ledgers)

    @property
    def goals(self) -> Dict[str, Goal]:
        return dict(self._goals)

    def get_ledger(self, month: str) -> MonthLedger:
        """Immutable snapshot of ``month``.

        Raises:
            ValidationError: If the month is not loaded
        """
        ledger = self._ledgers.get(month)
        if ledger is None:
            raise ValidationError(f"Unknown month {month!r}")
        return ledger

    def list_visible(self, month: str) -> List[CategoryMonthFigures]:
        return list_visible(self.get_ledger(month))

    def list_hidden(self, month: str) -> List[CategoryMonthFigures]:
        return list_hidden(self.get_ledger(month))

    def ready_to_assign(self, month: str) -> int:
        return self.get_ledger(month).ready_to_assign_cents

    def history_before(self, month: str) -> Dict[str, MonthLedger]:
        return {key: ledger for key, ledger in self._ledgers.items() if key < month}

    def command(self, command_id: str) -> Optional[Command]:
        return self._commands.get(command_id)

    @property
    def undo_stack(self) -> List[Command]:
        return list(self._undo)

    @property
    def redo_stack(self) -> List[Command]:
        return list(self._redo)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def last_action_label(self) -> Optional[str]:
        return self._last_action

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_patch_listener(self, listener: PatchListener) -> Callable[[], None]:
        """Register a persistence sink for command patches."""
        self._patch_listeners.append(listener)

        def remove() -> None:
            if listener in self._patch_listeners:
                self._patch_listeners.remove(listener)

        return remove

    def _notify(self, event: str, **payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, event)

    def _emit_patch(self, command: Command, action: PatchAction) -> SyncPatch:
        patch = command.next_patch(action)
        for listener in list(self._patch_listeners):
            try:
                listener(patch)
            except Exception:
                logger.exception("Patch listener %r failed on %s", listener, patch.patch_id)
        return patch

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def apply(self, command: Command) -> MonthLedger:
        """Validate and apply ``command``, then record it for undo.

        Returns:
            The new snapshot of the command's target month

        Raises:
            ValidationError: If the command would violate a ledger
                invariant; nothing is changed in that case
        """
        if command.state is not CommandState.PENDING:
            raise ValidationError(f"Command {command.id} has already been applied")
        try:
            changes = self._plan(command)
        except ValidationError as exc:
            logger.warning("Rejected %s for %s: %s", command.kind.value, command.target_month, exc)
            raise

        self._write(changes, command.target_month)
        command.changes = tuple(changes)
        command.state = CommandState.APPLIED
        command.label = describe(command, self._category_name(command))
        self._commands[command.id] = command
        self._push_undo(command)
        self._redo.clear()
        self._last_action = command.label
        self.last_condition = None
        logger.info("Applied %s in %s: %s", command.kind.value, command.target_month, command.label)

        self._emit_patch(command, PatchAction.APPLY)
        self._notify('applied', command_id=command.id, month=command.target_month)
        return self._ledgers[command.target_month]

    def undo(self) -> Optional[MonthLedger]:
        """Undo the most recent command.

        Returns:
            Snapshot of the affected month, or None when there was nothing to
            undo (``last_condition`` then holds :class:`NothingToUndo`)
        """
        if not self._undo:
            self.last_condition = NothingToUndo("Nothing to undo")
            return None
        command = self._undo.pop()
        self._write([change.inverted() for change in reversed(command.changes)], command.target_month)
        command.state = CommandState.ROLLED_BACK
        self._redo.append(command)
        self._last_action = self._history_label('undone', command)
        self.last_condition = None
        logger.info("Undid %s in %s", command.kind.value, command.target_month)

        self._emit_patch(command, PatchAction.UNDO)
        self._notify('undone', command_id=command.id, month=command.target_month)
        return self._ledgers.get(command.target_month)

    def redo(self) -> Optional[MonthLedger]:
        """Re-apply the most recently undone command.

        Returns:
            Snapshot of the affected month, or None when there was nothing to
            redo (``last_condition`` then holds :class:`NothingToRedo`)
        """
        if not self._redo:
            self.last_condition = NothingToRedo("Nothing to redo")
            return None
        command = self._redo.pop()
        self._write(command.changes, command.target_month)
        command.state = CommandState.APPLIED
        self._push_undo(command)
        self._last_action = self._history_label('redone', command)
        self.last_condition = None
        logger.info("Redid %s in %s", command.kind.value, command.target_month)

        self._emit_patch(command, PatchAction.REDO)
        self._notify('redone', command_id=command.id, month=command.target_month)
        return self._ledgers.get(command.target_month)

    def _push_undo(self, command: Command) -> None:
        self._undo.append(command)
        if len(self._undo) > self.max_history:
            del self._undo[0:len(self._undo) - self.max_history]

    def _history_label(self, key: str, command: Command) -> str:
        template = get_config_value('planner', 'labels', key, default='{label}')
        return template.format(label=command.label)

    def _category_name(self, command: Command) -> Optional[str]:
        category = self._categories.get(command.category_id or '')
        return category.name if category else None

    # -- convenience wrappers -------------------------------------------

    def set_budgeted(self, month: str, category_id: str, amount: Any) -> MonthLedger:
        return self.apply(Command.set_budgeted(month, category_id, amount))

    def toggle_rollover(self, month: str, category_id: str, enabled: Optional[bool] = None) -> MonthLedger:
        return self.apply(Command.toggle_rollover(month, category_id, enabled))

    def hide_category(self, month: str, category_id: str) -> MonthLedger:
        return self.apply(Command.hide_category(month, category_id))

    def unhide_category(self, month: str, category_id: str) -> MonthLedger:
        return self.apply(Command.unhide_category(month, category_id))

    def preview(
        self,
        strategy: str,
        month: str,
        selection: Optional[Collection[str]] = None,
        **options: Any,
    ) -> List[BudgetDiff]:
        """Diffs a distribution strategy would produce, without applying it."""
        ledger = self.get_ledger(month)
        func = STRATEGIES.get(strategy)
        if func is None:
            raise ValidationError(f"Unknown distribution strategy {strategy!r}")
        if strategy == FILL_GOALS:
            options.setdefault('goals', self._goals)
        patch = func(ledger, self.history_before(month), selection, **options)
        return diff_patch(ledger, patch)

    def distribute(
        self,
        strategy: str,
        month: str,
        selection: Optional[Collection[str]] = None,
        **options: Any,
    ) -> MonthLedger:
        """Apply a strategy as one atomic ``BulkDistribute`` command.

        Categories the strategy would not change are left out; if nothing
        changes, no command is recorded.
        """
        diffs = self.preview(strategy, month, selection, **options)
        if not diffs:
            logger.info("%s left %s unchanged", strategy, month)
            return self.get_ledger(month)
        patch = {diff.category_id: diff.to_cents for diff in diffs}
        return self.apply(Command.bulk_distribute(month, patch, strategy))

    # ------------------------------------------------------------------
    # Planning and writing
    # ------------------------------------------------------------------

    def _require_month(self, month: str) -> MonthLedger:
        parse_month(month)
        return self.get_ledger(month)

    @staticmethod
    def _budget_amount(value: Any, category_id: str) -> int:
        try:
            cents = Money.coerce(value).cents
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid budgeted amount for {category_id}: {exc}") from exc
        if cents < 0:
            raise ValidationError(f"Budgeted amount for {category_id} cannot be negative")
        return cents

    def _plan(self, command: Command) -> List[FieldChange]:
        ledger = self._require_month(command.target_month)
        if command.kind is CommandKind.BULK_DISTRIBUTE:
            return self._plan_bulk(ledger, command)

        category_id = command.params.get('category_id')
        if not category_id or not ledger.has_category(category_id):
            raise ValidationError(f"Unknown category {category_id!r} in {ledger.month}")
        category = self._categories[category_id]

        if command.kind is CommandKind.SET_BUDGETED:
            cents = self._budget_amount(command.params.get('budgeted_cents'), category_id)
            row = ledger.figures_for(category_id)
            return [FieldChange(ledger.month, category_id, 'budgeted_cents', row.budgeted_cents, cents)]

        if command.kind is CommandKind.TOGGLE_ROLLOVER:
            enabled = command.params.get('enabled')
            if enabled is None:
                enabled = not category.rollover_enabled
            elif not isinstance(enabled, bool):
                raise ValidationError(f"Rollover flag for {category_id} must be a boolean")
            elif enabled == category.rollover_enabled:
                state = 'enabled' if enabled else 'disabled'
                raise ValidationError(f"Rollover is already {state} for {category_id}")
            command.params['enabled'] = enabled
            changes = [FieldChange(None, category_id, 'rollover_enabled', category.rollover_enabled, enabled)]
            # The current month keeps its carry-in; only later months change.
            # Every later row is recorded, unchanged ones included, so undo can
            # tell them apart from months opened afterwards.
            for month in sorted(self._ledgers):
                if month <= ledger.month:
                    continue
                row = self._ledgers[month].get_figures(category_id)
                if row is not None:
                    changes.append(FieldChange(month, category_id, 'rollover_enabled', row.rollover_enabled, enabled))
            return changes

        if command.kind is CommandKind.HIDE_CATEGORY:
            if category.hidden:
                raise ValidationError(f"Category {category_id} is already hidden")
            return [FieldChange(None, category_id, 'hidden', False, True)]

        if command.kind is CommandKind.UNHIDE_CATEGORY:
            if not category.hidden:
                raise ValidationError(f"Category {category_id} is not hidden")
            changes = [FieldChange(None, category_id, 'hidden', True, False)]
            row = ledger.figures_for(category_id)
            if not row.starts_fresh:
                changes.append(FieldChange(ledger.month, category_id, 'starts_fresh', False, True))
            return changes

        raise ValidationError(f"Unsupported command kind {command.kind!r}")

    def _plan_bulk(self, ledger: MonthLedger, command: Command) -> List[FieldChange]:
        patch = command.params.get('patch')
        if not isinstance(patch, Mapping) or not patch:
            raise ValidationError(f"Bulk distribution for {ledger.month} has no categories")
        amounts = {}
        for category_id, value in patch.items():
            if not ledger.has_category(category_id):
                raise ValidationError(f"Unknown category {category_id!r} in {ledger.month}")
            amounts[category_id] = self._budget_amount(value, category_id)
        return [
            FieldChange(ledger.month, row.category_id, 'budgeted_cents', row.budgeted_cents, amounts[row.category_id])
            for row in ledger.figures
            if row.category_id in amounts
        ]

    def _current_value(self, change: FieldChange) -> Any:
        if change.month is None:
            category = self._categories.get(change.category_id)
            return getattr(category, change.field) if category else None
        ledger = self._ledgers.get(change.month)
        row = ledger.get_figures(change.category_id) if ledger else None
        return getattr(row, change.field) if row else None

    def _set_value(self, change: FieldChange) -> None:
        if change.month is None:
            category = replace(self._categories[change.category_id], **{change.field: change.after})
            self._categories[change.category_id] = category
            for month, ledger in self._ledgers.items():
                if not ledger.has_category(category.id):
                    continue
                categories = list(ledger.categories)
                categories[ledger.index_of(category.id)] = category
                self._ledgers[month] = ledger.with_categories(categories)
            return
        ledger = self._ledgers[change.month]
        index = ledger.index_of(change.category_id)
        figures = list(ledger.figures)
        figures[index] = replace(figures[index], **{change.field: change.after})
        self._ledgers[change.month] = ledger.with_figures(figures)

    def _follow_rollover(self, changes: Sequence[FieldChange], target_month: str) -> None:
        """Align rows opened after a rollover toggle with the category flag.

        Months after ``target_month`` that the changes do not name were opened
        once the command was planned; their row flag follows the category.
        """
        for change in changes:
            if change.month is not None or change.field != 'rollover_enabled':
                continue
            recorded = {
                other.month for other in changes
                if other.month is not None
                and other.category_id == change.category_id
                and other.field == 'rollover_enabled'
            }
            enabled = self._categories[change.category_id].rollover_enabled
            for month in sorted(self._ledgers):
                if month <= target_month or month in recorded:
                    continue
                row = self._ledgers[month].get_figures(change.category_id)
                if row is not None and row.rollover_enabled != enabled:
                    self._set_value(
                        FieldChange(month, change.category_id, 'rollover_enabled', row.rollover_enabled, enabled)
                    )

    def _write(self, changes: Sequence[FieldChange], target_month: Optional[str] = None) -> None:
        """Write each change's ``after`` value, then re-resolve balances."""
        if not changes:
            return
        for change in changes:
            self._set_value(change)
        if target_month is not None:
            self._follow_rollover(changes, target_month)
        months = [change.month for change in changes if change.month is not None]
        if any(change.month is None for change in changes) or not months:
            start = min(self._ledgers) if self._ledgers else None
        else:
            start = min(months)
        if start is not None:
            self._recompute(start)

    # ------------------------------------------------------------------
    # Persistence outcomes
    # ------------------------------------------------------------------

    def mark_committed(self, patch: SyncPatch) -> None:
        """Record that the backend acknowledged ``patch``."""
        command = self._commands.get(patch.command_id)
        if command is None:
            logger.warning("Acknowledgement for unknown command %s", patch.command_id)
            return
        if patch.revision != command.revision:
            logger.debug("Acknowledged superseded patch %s", patch.patch_id)
            return
        command.committed = True
        if command.state is CommandState.APPLIED:
            command.state = CommandState.COMMITTED
        self._notify('committed', command_id=command.id, month=command.target_month)

    def revert(self, patch: SyncPatch, reason: str = '') -> Optional[SyncFailure]:
        """Undo the local effect of a patch the backend never accepted.

        Fields a later command has since overwritten are left alone. The
        command leaves both history stacks and the failure is recorded in
        ``failures`` so the user can try again.
        """
        command = self._commands.get(patch.command_id)
        if command is None:
            logger.warning("Revert requested for unknown command %s", patch.command_id)
            return None

        failure = SyncFailure(
            f"Could not save '{command.label or command.kind.value}' for {command.target_month}"
            + (f": {reason}" if reason else ''),
            command_id=command.id,
            month=command.target_month,
            category_ids=command.category_ids,
        )
        if patch.revision == command.revision and command.state is not CommandState.REVERTED:
            restore = [
                change.inverted()
                for change in reversed(patch.changes)
                if self._current_value(change) == change.after
            ]
            self._write(restore, patch.target_month)
            command.state = CommandState.REVERTED
            command.committed = False
            self._undo = [c for c in self._undo if c.id != command.id]
            self._redo = [c for c in self._redo if c.id != command.id]
            logger.error("Reverted %s in %s after sync failure", command.kind.value, command.target_month)
        else:
            logger.warning("Sync failure for superseded patch %s; local state kept", patch.patch_id)

        self.failures.append(failure)
        self.last_condition = failure
        self._notify('reverted', command_id=command.id, month=command.target_month)
        return failure

    def reconcile(
        self,
        categories: Iterable[Category],
        ledgers: Iterable[MonthLedger],
        conflict: Optional[ConflictOnReconcile] = None,
    ) -> List[Command]:
        """Replace local state with the backend's authoritative state.

        Applied commands the backend never acknowledged are not replayed;
        they move to ``awaiting_confirmation`` until the user confirms or
        discards each one.

        Returns:
            The commands now awaiting confirmation
        """
        pending = [c for c in self._undo if c.state is CommandState.APPLIED and not c.committed]
        for command in pending:
            command.state = CommandState.REVERTED
        self._undo.clear()
        self._redo.clear()
        self._load(categories, ledgers)
        self.awaiting_confirmation.extend(pending)
        if conflict is not None:
            self.failures.append(conflict)
            self.last_condition = conflict
        logger.error("Reconciled with backend; %d local command(s) need confirmation", len(pending))
        self._notify('reconciled', command_ids=[c.id for c in pending])
        return pending

    def confirm_pending(self, command_id: str) -> MonthLedger:
        """Re-apply a command held back by reconciliation, as a new command."""
        for command in self.awaiting_confirmation:
            if command.id == command_id:
                ledger = self.apply(command.fresh_copy())
                self.awaiting_confirmation.remove(command)
                return ledger
        raise ValidationError(f"No pending command {command_id!r} awaiting confirmation")

    def discard_pending(self, command_id: Optional[str] = None) -> None:
        if command_id is None:
            self.awaiting_confirmation.clear()
        else:
            self.awaiting_confirmation = [c for c in self.awaiting_confirmation if c.id != command_id]
        self._notify('pending_discarded', command_id=command_id)

    # ------------------------------------------------------------------
    # External inputs
    # ------------------------------------------------------------------

    def record_activity(self, month: str, category_id: str, activity_cents: Any) -> MonthLedger:
        """Set a category's activity for a month, as reported by the feed."""
        ledger = self._require_month(month)
        if not ledger.has_category(category_id):
            raise ValidationError(f"Unknown category {category_id!r} in {month}")
        try:
            cents = Money.coerce(activity_cents).cents
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid activity for {category_id}: {exc}") from exc
        row = ledger.figures_for(category_id)
        self._set_value(FieldChange(month, category_id, 'activity_cents', row.activity_cents, cents))
        self._recompute(month)
        self._notify('activity', month=month, category_id=category_id)
        return self._ledgers[month]

    def set_income(self, month: str, income_cents: Any) -> MonthLedger:
        """Set the income pool of a month, as reported by the feed."""
        ledger = self._require_month(month)
        try:
            cents = Money.coerce(income_cents).cents
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid income for {month}: {exc}") from exc
        self._ledgers[month] = replace(ledger, income_cents=cents)
        self._recompute(month)
        self._notify('income', month=month)
        return self._ledgers[month]

    def open_month(self, month: Optional[str] = None) -> MonthLedger:
        """Advance the month boundary.

        The new month starts with nothing budgeted and no activity; each
        category carries in last month's final balance.

        Raises:
            ValidationError: If ``month`` does not directly follow the latest
                loaded month
        """
        if month is None:
            if not self._ledgers:
                raise ValidationError("No month loaded yet; pass the month to open")
            month = next_month(max(self._ledgers))
        parse_month(month)
        if month in self._ledgers:
            return self._ledgers[month]
        if self._ledgers and month != next_month(max(self._ledgers)):
            raise ValidationError(
                f"Month {month} does not follow the latest loaded month {max(self._ledgers)}"
            )
        self._ledgers[month] = MonthLedger.build(month, self._categories.values())
        self._recompute(month)
        logger.info("Opened month %s", month)
        self._notify('month_opened', month=month)
        return self._ledgers[month]

    def register_category(self, category: Category) -> None:
        """Add a category created elsewhere; it starts from zero in every month."""
        if category.id in self._categories:
            raise ValidationError(f"Category {category.id!r} already exists")
        self._categories[category.id] = category
        for month, ledger in list(self._ledgers.items()):
            self._ledgers[month] = self._rebuild(ledger)
        if self._ledgers:
            self._recompute(min(self._ledgers))
        self._notify('category_added', category_id=category.id)

    def set_goal(self, goal: Goal) -> None:
        if goal.category_id not in self._categories:
            raise ValidationError(f"Unknown category {goal.category_id!r}")
        self._goals[goal.category_id] = goal
        self._notify('goals', category_id=goal.category_id)

    def remove_goal(self, category_id: str) -> None:
        self._goals.pop(category_id, None)
        self._notify('goals', category_id=category_id)
