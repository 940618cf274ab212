from fractions import Fraction

from budget_planner.goals import Goal, GoalKind
from budget_planner.models import Category, CategoryMonthFigures, MonthLedger
from budget_planner.strategies import (
    average_activity,
    average_budgeted,
    batch_adjust,
    batch_adjust_percent,
    batch_set,
    copy_previous_month,
    diff_patch,
    fill_goals,
    history_frame,
    spent_last_month,
    trailing_means,
)


def _categories():
    return [
        Category('a', 'Alpha', 'g', 'Group', sort=0),
        Category('b', 'Beta', 'g', 'Group', sort=1),
        Category('c', 'Gamma', 'g', 'Group', sort=2),
        Category('h', 'Hidden', 'g', 'Group', sort=3, hidden=True),
    ]


def _ledger(month, budgeted=None, activity=None):
    budgeted = budgeted or {}
    activity = activity or {}
    ids = set(budgeted) | set(activity)
    figures = {
        cid: CategoryMonthFigures(cid, budgeted_cents=budgeted.get(cid, 0), activity_cents=activity.get(cid, 0))
        for cid in ids
    }
    return MonthLedger.build(month, _categories(), figures=figures)


def test_copy_previous_month_uses_zero_when_absent():
    current = _ledger('2025-05')
    history = {'2025-04': _ledger('2025-04', budgeted={'a': 1000, 'b': 250})}

    patch = copy_previous_month(current, history)

    assert patch == {'a': 1000, 'b': 250, 'c': 0}


def test_copy_previous_month_without_history():
    assert copy_previous_month(_ledger('2025-05'), {}) == {'a': 0, 'b': 0, 'c': 0}


def test_strategies_skip_hidden_categories():
    current = _ledger('2025-05')
    history = {'2025-04': _ledger('2025-04', budgeted={'h': 500})}
    assert 'h' not in copy_previous_month(current, history)
    assert 'h' not in batch_set(current, history, value=100)


def test_average_activity_rounds_with_largest_remainder():
    current = _ledger('2025-05')
    history = {
        '2025-04': _ledger('2025-04', activity={'a': 100, 'b': 100, 'c': 101}),
        '2025-03': _ledger('2025-03', activity={'a': 100, 'b': 101, 'c': 100}),
        '2025-02': _ledger('2025-02', activity={'a': 101, 'b': 100, 'c': 100}),
    }

    patch = average_activity(current, history)

    # every mean is 100 1/3; total 301 rounds to 301
    assert sum(patch.values()) == 301
    assert patch == {'a': 101, 'b': 100, 'c': 100}


def test_average_activity_uses_months_present_and_clamps_inflows():
    current = _ledger('2025-05')
    history = {
        '2025-04': _ledger('2025-04', activity={'a': 300, 'b': -500}),
        '2025-02': _ledger('2025-02', activity={'a': 600}),
        # older than the trailing window
        '2025-01': _ledger('2025-01', activity={'a': 99999}),
    }

    patch = average_activity(current, history)

    assert patch['a'] == 450
    assert patch['b'] == 0
    assert patch['c'] == 0


def test_average_activity_with_no_history_budgets_zero():
    assert average_activity(_ledger('2025-05'), {}) == {'a': 0, 'b': 0, 'c': 0}


def test_trailing_means_are_exact():
    history = {
        '2025-04': _ledger('2025-04', budgeted={'a': 100}),
        '2025-03': _ledger('2025-03', budgeted={'a': 101}),
    }
    means = trailing_means(_ledger('2025-05'), history, 'budgeted_cents')
    assert means['a'] == Fraction(201, 2)


def test_history_frame_has_integer_values():
    history = {'2025-04': _ledger('2025-04', activity={'a': 120})}
    frame = history_frame(history, ['2025-04', '2025-03'], 'activity_cents')
    assert list(frame.columns) == ['month', 'category_id', 'value']
    assert str(frame['value'].dtype) == 'int64'
    assert frame.loc[frame['category_id'] == 'a', 'value'].item() == 120
    assert history_frame({}, ['2025-04'], 'activity_cents').empty


def test_average_budgeted_and_spent_last_month():
    current = _ledger('2025-05')
    history = {
        '2025-04': _ledger('2025-04', budgeted={'a': 200}, activity={'a': 150, 'b': -20}),
        '2025-03': _ledger('2025-03', budgeted={'a': 100}),
    }
    assert average_budgeted(current, history)['a'] == 150
    assert spent_last_month(current, history) == {'a': 150, 'b': 0, 'c': 0}


def test_selection_restricts_targets():
    current = _ledger('2025-05', budgeted={'a': 100, 'b': 100})
    assert batch_adjust(current, {}, selection=['b', 'h'], delta=50) == {'b': 150}


def test_batch_adjust_clamps_at_zero():
    current = _ledger('2025-05', budgeted={'a': 100})
    assert batch_adjust(current, {}, delta=-250) == {'a': 0, 'b': 0, 'c': 0}


def test_batch_adjust_percent_rounds_half_up():
    current = _ledger('2025-05', budgeted={'a': 105, 'b': 1000})
    patch = batch_adjust_percent(current, {}, percent=10)
    assert patch['a'] == 116
    assert patch['b'] == 1100
    assert batch_adjust_percent(current, {}, percent=-200)['b'] == 0


def test_fill_goals_only_targets_categories_with_goals():
    current = _ledger('2025-05', activity={'b': 300})
    goals = {
        'a': Goal('a', GoalKind.MONTHLY_FUNDING, 5000),
        'b': Goal('b', GoalKind.TARGET_BALANCE, 1000),
        'c': Goal('c', GoalKind.CUSTOM, 700),
    }
    assert fill_goals(current, {}, goals=goals) == {'a': 5000, 'b': 1300}


def test_diff_patch_skips_unchanged_categories():
    current = _ledger('2025-05', budgeted={'a': 100, 'b': 200})
    diffs = diff_patch(current, {'a': 100, 'b': 250, 'c': 5})
    assert [(d.category_id, d.from_cents, d.to_cents, d.delta_cents) for d in diffs] == [
        ('b', 200, 250, 50),
        ('c', 0, 5, 5),
    ]
    assert diffs[0].name == 'Beta'
