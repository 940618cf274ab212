import pytest

from budget_planner.commands import CommandState
from budget_planner.db import SQLiteBackend
from budget_planner.engine import BudgetEngine
from budget_planner.errors import ConflictOnReconcile, SyncFailure
from budget_planner.models import Category, CategoryMonthFigures, MonthLedger, Workspace
from budget_planner.sync import SyncCoordinator

WORKSPACE = Workspace('org', 'user')


class FlakyBackend:
    """Wraps a backend and fails the first ``failures`` pushes."""

    def __init__(self, backend, failures=0):
        self.backend = backend
        self.failures = failures
        self.attempts = 0

    def push(self, workspace, patch, expected_revision):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError('connection reset')
        return self.backend.push(workspace, patch, expected_revision)

    def load_state(self, workspace):
        return self.backend.load_state(workspace)

    def revision(self, workspace):
        return self.backend.revision(workspace)


def _categories():
    return [
        Category('a', 'Groceries', 'g', 'Essentials'),
        Category('b', 'Rent', 'g', 'Essentials', sort=1),
    ]


def _ledgers(categories, rent_budget=0):
    return [
        MonthLedger.build('2025-05', categories, figures={
            'b': CategoryMonthFigures('b', budgeted_cents=rent_budget),
        }, income_cents=100000),
    ]


def _setup(tmp_path, failures=0, **options):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    categories = _categories()
    ledgers = _ledgers(categories)
    backend.save_state(WORKSPACE, categories, ledgers)
    engine = BudgetEngine(categories=categories, ledgers=ledgers, workspace=WORKSPACE)
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    flaky = FlakyBackend(backend, failures)
    coordinator = SyncCoordinator(
        engine,
        flaky,
        backoff_base=0.1,
        backoff_factor=2.0,
        sleep=fake_sleep,
        **options,
    )
    return engine, backend, flaky, coordinator, delays


def _stored_budget(backend, category_id):
    categories, ledgers = backend.load_state(WORKSPACE)
    return ledgers[0].figures_for(category_id).budgeted_cents


@pytest.mark.asyncio
async def test_commands_are_committed_in_order(tmp_path):
    engine, backend, _, coordinator, delays = _setup(tmp_path)
    await coordinator.start()
    try:
        engine.set_budgeted('2025-05', 'a', 100)
        engine.set_budgeted('2025-05', 'a', 200)
        engine.set_budgeted('2025-05', 'b', 300)
        await coordinator.flush()
    finally:
        await coordinator.stop()

    assert all(c.state is CommandState.COMMITTED for c in engine.undo_stack)
    assert _stored_budget(backend, 'a') == 200
    assert _stored_budget(backend, 'b') == 300
    assert coordinator.known_revision == 4
    assert [p.patch_id for p in backend.patch_log(WORKSPACE)] == coordinator.sent
    assert delays == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(tmp_path):
    engine, backend, flaky, coordinator, delays = _setup(tmp_path, failures=2, max_retries=3)
    await coordinator.start()
    try:
        engine.set_budgeted('2025-05', 'a', 100)
        await coordinator.flush()
    finally:
        await coordinator.stop()

    assert flaky.attempts == 3
    assert delays == [0.1, 0.2]
    assert engine.undo_stack[-1].state is CommandState.COMMITTED
    assert _stored_budget(backend, 'a') == 100
    assert engine.failures == []


@pytest.mark.asyncio
async def test_exhausted_retries_revert_the_command(tmp_path):
    engine, backend, flaky, coordinator, delays = _setup(tmp_path, failures=10, max_retries=2)
    await coordinator.start()
    try:
        engine.set_budgeted('2025-05', 'a', 100)
        command = engine.undo_stack[-1]
        await coordinator.flush()
    finally:
        await coordinator.stop()

    assert flaky.attempts == 3
    assert delays == [0.1, 0.2]
    assert command.state is CommandState.REVERTED
    assert engine.get_ledger('2025-05').figures_for('a').budgeted_cents == 0
    assert not engine.can_undo
    assert len(engine.failures) == 1
    failure = engine.failures[0]
    assert isinstance(failure, SyncFailure)
    assert failure.category_ids == ('a',)
    assert 'connection reset' in str(failure)
    assert _stored_budget(backend, 'a') == 0


@pytest.mark.asyncio
async def test_undo_before_acknowledgement_is_still_sent(tmp_path):
    engine, backend, _, coordinator, _ = _setup(tmp_path)
    await coordinator.start()
    try:
        engine.set_budgeted('2025-05', 'a', 100)
        command = engine.undo_stack[-1]
        engine.undo()
        await coordinator.flush()
    finally:
        await coordinator.stop()

    assert len(coordinator.sent) == 2
    assert command.state is CommandState.ROLLED_BACK
    assert command.committed is True
    assert _stored_budget(backend, 'a') == 0


@pytest.mark.asyncio
async def test_patches_applied_before_start_are_sent(tmp_path):
    engine, backend, _, coordinator, _ = _setup(tmp_path)
    coordinator.attach()
    engine.set_budgeted('2025-05', 'a', 100)
    assert coordinator.pending == 1

    await coordinator.start()
    try:
        await coordinator.flush()
    finally:
        await coordinator.stop()

    assert _stored_budget(backend, 'a') == 100
    assert coordinator.pending == 0


@pytest.mark.asyncio
async def test_conflict_reconciles_and_requires_confirmation(tmp_path):
    engine, backend, _, coordinator, _ = _setup(tmp_path)
    await coordinator.start()
    try:
        # another session writes first
        categories = _categories()
        backend.save_state(WORKSPACE, categories, _ledgers(categories, rent_budget=9999))

        engine.set_budgeted('2025-05', 'a', 700)
        engine.set_budgeted('2025-05', 'b', 800)
        first, second = engine.undo_stack
        await coordinator.flush()

        assert isinstance(engine.last_condition, ConflictOnReconcile)
        assert engine.awaiting_confirmation == [first, second]
        assert engine.get_ledger('2025-05').budgeted_map() == {'a': 0, 'b': 9999}
        assert backend.patch_log(WORKSPACE) == []
        assert coordinator.known_revision == 2

        engine.confirm_pending(first.id)
        await coordinator.flush()
    finally:
        await coordinator.stop()

    assert _stored_budget(backend, 'a') == 700
    assert _stored_budget(backend, 'b') == 9999
    assert engine.awaiting_confirmation == [second]


def test_coordinator_requires_a_workspace(tmp_path):
    with pytest.raises(ValueError):
        SyncCoordinator(BudgetEngine(), SQLiteBackend(tmp_path / 'planner.db'))


@pytest.mark.asyncio
async def test_worker_refuses_to_run_before_start(tmp_path):
    _, _, _, coordinator, _ = _setup(tmp_path)
    with pytest.raises(RuntimeError):
        await coordinator._run()


@pytest.mark.asyncio
async def test_reconcile_before_start_reloads_backend_state(tmp_path):
    engine, backend, _, coordinator, _ = _setup(tmp_path)
    categories = _categories()
    backend.save_state(WORKSPACE, categories, _ledgers(categories, rent_budget=4200))

    await coordinator._reconcile(ConflictOnReconcile('moved', expected_revision=1, actual_revision=2))

    assert engine.get_ledger('2025-05').budgeted_map()['b'] == 4200
    assert coordinator.known_revision == backend.revision(WORKSPACE)
    assert isinstance(engine.last_condition, ConflictOnReconcile)
