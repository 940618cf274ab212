from fractions import Fraction

import pytest

from budget_planner.money import Money, parse_masked_input, round_half_up, round_shares


def test_money_rejects_non_integer_cents():
    with pytest.raises(TypeError):
        Money(12.5)
    with pytest.raises(TypeError):
        Money(True)


def test_parse_accepts_dot_and_comma():
    assert Money.parse('12.5').cents == 1250
    assert Money.parse('12,05').cents == 1205
    assert Money.parse('-3,07').cents == -307
    assert Money.parse(' 7 ').cents == 700


@pytest.mark.parametrize('text', ['', 'abc', '1.234', '1.2.3', '12.'])
def test_parse_rejects_malformed_amounts(text):
    with pytest.raises(ValueError):
        Money.parse(text)


def test_coerce_accepts_money_int_and_string():
    assert Money.coerce(Money(5)) == Money(5)
    assert Money.coerce(250) == Money(250)
    assert Money.coerce('2.50') == Money(250)
    with pytest.raises(ValueError):
        Money.coerce(2.5)


def test_arithmetic_stays_in_cents():
    total = Money(150) + Money(275) - Money(25)
    assert total == Money(400)
    assert -total == Money(-400)
    assert Money.total([Money(1), Money(2), Money(3)]) == Money(6)
    assert str(Money(-1205)) == '-12.05'


def test_round_half_up_rounds_away_from_zero():
    assert round_half_up(Fraction(5, 2)) == 3
    assert round_half_up(Fraction(-5, 2)) == -3
    assert round_half_up(Fraction(7, 3)) == 2
    assert round_half_up(Fraction(-7, 3)) == -2


def test_scale_rounds_to_nearest_cent():
    assert Money(1000).scale(1, 3) == Money(333)
    assert Money(5).scale(1, 2) == Money(3)
    with pytest.raises(ZeroDivisionError):
        Money(1).scale(1, 0)


def test_round_shares_preserves_rounded_total():
    shares = [Fraction(10, 3)] * 3
    assert round_shares(shares) == [4, 3, 3]

    shares = [Fraction(101, 2), Fraction(101, 2)]
    parts = round_shares(shares)
    assert sum(parts) == round_half_up(sum(shares, Fraction(0)))
    # equal remainders: earlier position wins
    assert parts == [51, 50]


def test_round_shares_prefers_largest_remainder():
    parts = round_shares([Fraction(11, 10), Fraction(19, 10), Fraction(1, 1)])
    assert parts == [1, 2, 1]


def test_allocate_sums_to_whole_amount():
    parts = Money(1000).allocate([1, 1, 1])
    assert [p.cents for p in parts] == [334, 333, 333]
    assert Money.total(parts) == Money(1000)

    even = Money(10).allocate([0, 0])
    assert [p.cents for p in even] == [5, 5]

    with pytest.raises(ValueError):
        Money(10).allocate([1, -1])


def test_parse_masked_input_reads_digits_as_cents():
    assert parse_masked_input('R$ 1.234,56') == 123456
    assert parse_masked_input('') == 0
    assert parse_masked_input('abc') == 0
