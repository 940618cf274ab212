import pytest

from budget_planner.errors import ValidationError
from budget_planner.models import (
    Category,
    CategoryMonthFigures,
    MonthLedger,
    list_hidden,
    list_visible,
    next_month,
    parse_month,
    previous_month,
    trailing_months,
)
from budget_planner.rollover import resolve_figures, resolve_from, resolve_ledger


def _categories():
    return [
        Category('food', 'Food', 'g1', 'Essentials', group_sort=0, sort=1),
        Category('rent', 'Rent', 'g1', 'Essentials', group_sort=0, sort=0),
        Category('fun', 'Fun', 'g2', 'Lifestyle', group_sort=1, sort=0, hidden=True),
    ]


def test_month_helpers_wrap_years():
    assert previous_month('2025-01') == '2024-12'
    assert next_month('2024-12') == '2025-01'
    assert trailing_months('2025-02', 3) == ['2025-01', '2024-12', '2024-11']
    with pytest.raises(ValidationError):
        parse_month('2025-13')
    with pytest.raises(ValidationError):
        parse_month('May 2025')


def test_build_orders_categories_and_fills_missing_figures():
    ledger = MonthLedger.build('2025-05', _categories())
    assert [c.id for c in ledger.categories] == ['rent', 'food', 'fun']
    assert all(row.budgeted_cents == 0 for row in ledger.figures)
    assert [row.category_id for row in list_visible(ledger)] == ['rent', 'food']
    assert [row.category_id for row in list_hidden(ledger)] == ['fun']


def test_figures_reject_float_amounts():
    with pytest.raises(ValidationError):
        CategoryMonthFigures('food', budgeted_cents=10.5)


def test_available_includes_prior_balance_when_rollover_on():
    row = CategoryMonthFigures('food', budgeted_cents=20000, activity_cents=15000)
    assert resolve_figures(row, prev_available_cents=3000).available_cents == 8000


def test_rollover_off_drops_prior_balance():
    row = CategoryMonthFigures('food', budgeted_cents=20000, activity_cents=15000, rollover_enabled=False)
    resolved = resolve_figures(row, prev_available_cents=3000)
    assert resolved.prev_available_cents == 3000
    assert resolved.available_cents == 5000


def test_negative_balance_carries_forward():
    row = CategoryMonthFigures('food', budgeted_cents=10000, activity_cents=2000)
    assert resolve_figures(row, prev_available_cents=-4000).available_cents == 4000


def test_starts_fresh_forces_zero_carry_in():
    row = CategoryMonthFigures('food', budgeted_cents=1000, starts_fresh=True)
    resolved = resolve_figures(row, prev_available_cents=9999)
    assert resolved.prev_available_cents == 9999
    assert resolved.applied_prev_cents == 0
    assert resolved.available_cents == 1000
    assert resolve_figures(resolved).prev_available_cents == 9999


def test_resolve_ledger_carries_ready_to_assign():
    categories = _categories()
    april = resolve_ledger(MonthLedger.build(
        '2025-04',
        categories,
        figures={'food': CategoryMonthFigures('food', budgeted_cents=30000, activity_cents=10000)},
        income_cents=100000,
    ))
    may = resolve_ledger(MonthLedger.build('2025-05', categories, income_cents=50000), april)

    assert april.ready_to_assign_cents == 70000
    assert may.carried_ready_cents == 70000
    assert may.ready_to_assign_cents == 120000
    assert may.figures_for('food').available_cents == 20000


def test_resolve_from_ripples_through_consecutive_months_only():
    categories = _categories()
    ledgers = {
        '2025-03': MonthLedger.build('2025-03', categories, figures={
            'food': CategoryMonthFigures('food', budgeted_cents=5000),
        }),
        '2025-04': MonthLedger.build('2025-04', categories),
        # gap: 2025-05 is not loaded
        '2025-06': MonthLedger.build('2025-06', categories, figures={
            'food': CategoryMonthFigures('food', prev_available_cents=700),
        }),
    }
    resolved = resolve_from(ledgers, '2025-03')

    assert resolved['2025-04'].figures_for('food').available_cents == 5000
    assert resolved['2025-06'].figures_for('food').prev_available_cents == 700
    assert resolved['2025-06'].figures_for('food').available_cents == 700


def test_ledger_rejects_mismatched_pairs():
    food, rent = _categories()[:2]
    with pytest.raises(ValidationError):
        MonthLedger('2025-05', categories=(food,), figures=(CategoryMonthFigures('rent'),))
    with pytest.raises(ValidationError):
        MonthLedger('2025-05', categories=(food, rent), figures=(CategoryMonthFigures('food'),))
