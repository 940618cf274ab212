import pytest

from budget_planner.db import SQLiteBackend, connect, init_db
from budget_planner.engine import BudgetEngine
from budget_planner.errors import ConflictOnReconcile
from budget_planner.goals import Goal, GoalKind
from budget_planner.models import Category, CategoryMonthFigures, MonthLedger, Workspace

WORKSPACE = Workspace('org', 'user')


def _seed(backend):
    categories = [
        Category('a', 'Groceries', 'g', 'Essentials'),
        Category('b', 'Rent', 'g', 'Essentials', sort=1),
    ]
    april = MonthLedger.build('2025-04', categories, figures={
        'a': CategoryMonthFigures('a', budgeted_cents=1000, activity_cents=400, prev_available_cents=100),
    }, income_cents=10000)
    may = MonthLedger.build('2025-05', categories)
    engine = BudgetEngine(categories=categories, ledgers=[april, may], workspace=WORKSPACE)
    backend.save_state(
        WORKSPACE,
        engine.categories,
        [engine.get_ledger(m) for m in engine.months],
        goals=[Goal('a', GoalKind.MONTHLY_FUNDING, 2000)],
    )
    return engine


def _engine_from(backend):
    categories, ledgers = backend.load_state(WORKSPACE)
    return BudgetEngine(categories=categories, ledgers=ledgers, workspace=WORKSPACE)


def test_init_db_creates_tables(tmp_path):
    db_path = tmp_path / 'planner.db'
    init_db(db_path)
    with connect(db_path) as conn:
        tables = {row['name'] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {'workspaces', 'categories', 'month_income', 'month_figures', 'goals', 'patch_log'} <= tables


def test_save_and_load_state(tmp_path):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    engine = _seed(backend)

    assert backend.revision(WORKSPACE) == 1
    assert _engine_from(backend).ledgers == engine.ledgers
    assert backend.load_goals(WORKSPACE) == [Goal('a', GoalKind.MONTHLY_FUNDING, 2000)]
    assert backend.load_state(Workspace('org', 'someone-else')) == ([], [])


def test_push_applies_patch_and_bumps_revision(tmp_path):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    engine = _seed(backend)
    patches = []
    engine.add_patch_listener(patches.append)
    engine.set_budgeted('2025-05', 'b', 2500)
    engine.hide_category('2025-05', 'a')

    revision = backend.push(WORKSPACE, patches[0], expected_revision=1)
    revision = backend.push(WORKSPACE, patches[1], expected_revision=revision)

    assert revision == 3
    stored = _engine_from(backend)
    assert stored.get_ledger('2025-05').figures_for('b').budgeted_cents == 2500
    assert [c.id for c in stored.categories if c.hidden] == ['a']
    assert stored.ledgers == engine.ledgers
    assert [p.patch_id for p in backend.patch_log(WORKSPACE)] == [p.patch_id for p in patches]


def test_push_is_idempotent(tmp_path):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    engine = _seed(backend)
    patches = []
    engine.add_patch_listener(patches.append)
    engine.set_budgeted('2025-05', 'a', 700)

    first = backend.push(WORKSPACE, patches[0], expected_revision=1)
    # resend with the stale revision, as a retry after a lost response would
    second = backend.push(WORKSPACE, patches[0], expected_revision=1)

    assert first == second == 2
    assert len(backend.patch_log(WORKSPACE)) == 1


def test_push_with_stale_revision_conflicts(tmp_path):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    engine = _seed(backend)
    patches = []
    engine.add_patch_listener(patches.append)
    engine.set_budgeted('2025-05', 'a', 700)

    with pytest.raises(ConflictOnReconcile) as excinfo:
        backend.push(WORKSPACE, patches[0], expected_revision=0)

    assert excinfo.value.actual_revision == 1
    assert excinfo.value.expected_revision == 0
    assert backend.patch_log(WORKSPACE) == []


def test_undo_patch_restores_stored_value(tmp_path):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    engine = _seed(backend)
    patches = []
    engine.add_patch_listener(patches.append)
    engine.toggle_rollover('2025-04', 'a')
    engine.undo()

    revision = backend.push(WORKSPACE, patches[0], expected_revision=1)
    backend.push(WORKSPACE, patches[1], expected_revision=revision)

    assert _engine_from(backend).ledgers == engine.ledgers


def test_record_activity_does_not_bump_revision(tmp_path):
    backend = SQLiteBackend(tmp_path / 'planner.db')
    _seed(backend)
    backend.record_activity(WORKSPACE, '2025-05', 'a', 1234)
    assert backend.revision(WORKSPACE) == 1
    assert _engine_from(backend).get_ledger('2025-05').figures_for('a').activity_cents == 1234
