"""Fixed-point money helpers.

All amounts are integer counts of minor currency units (cents). Nothing in
this module converts to ``float``; ratios are handled with
:class:`fractions.Fraction` and rounded half away from zero.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Iterable, List, Sequence, Union

_DECIMAL_RE = re.compile(r'^([+-])?(\d+)(?:[.,](\d{1,2}))?$')

MoneyLike = Union['Money', int, str]


def round_half_up(value: Fraction) -> int:
    """Round an exact rational to the nearest integer, halves away from zero."""
    if value >= 0:
        return int((value + Fraction(1, 2)) // 1)
    return -int((-value + Fraction(1, 2)) // 1)


def round_shares(shares: Sequence[Fraction]) -> List[int]:
    """Round rational shares so the parts add up to the rounded whole.

    Each share is floored, then the cents still missing from
    ``round_half_up(sum(shares))`` are handed out one at a time to the shares
    with the largest fractional remainder. Ties go to the earlier position,
    so callers control tie-breaking through ordering.

    Args:
        shares: Exact per-part amounts in cents

    Returns:
        Integer cents per part, same order as ``shares``

    Example:
        >>> round_shares([Fraction(10, 3), Fraction(10, 3), Fraction(10, 3)])
        [4, 3, 3]
    """
    if not shares:
        return []
    whole = round_half_up(sum(shares, Fraction(0)))
    floors = [int(share // 1) for share in shares]
    remainder = whole - sum(floors)

    order = sorted(
        range(len(shares)),
        key=lambda i: (-(shares[i] - floors[i]), i),
    )
    parts = list(floors)
    # round(sum) >= floor(sum) >= sum(floors), so remainder is never negative
    for i in order[:remainder]:
        parts[i] += 1
    return parts


def parse_masked_input(text: str) -> int:
    """Read a currency-masked input field as cents.

    Input masks render amounts such as ``"R$ 1.234,56"``; only the digits are
    meaningful and they always represent cents.

    Example:
        >>> parse_masked_input("R$ 1.234,56")
        123456
    """
    digits = ''.join(ch for ch in text or '' if ch.isdigit())
    if not digits:
        return 0
    return int(digits)


@dataclass(frozen=True, order=True)
class Money:
    """An immutable amount of integer cents."""

    cents: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError(f"Money requires integer cents, got {type(self.cents).__name__}")

    # -- construction -----------------------------------------------------

    @classmethod
    def zero(cls) -> 'Money':
        return cls(0)

    @classmethod
    def parse(cls, text: str) -> 'Money':
        """Parse a decimal string such as ``"12.5"`` or ``"-3,07"``.

        Raises:
            ValueError: If the text is not numeric or has more than two
                fractional digits.
        """
        if not isinstance(text, str):
            raise ValueError(f"Expected a decimal string, got {text!r}")
        match = _DECIMAL_RE.match(text.strip())
        if not match:
            raise ValueError(f"Invalid monetary amount: {text!r}")
        sign, units, fraction = match.groups()
        cents = int(units) * 100 + int((fraction or '0').ljust(2, '0'))
        return cls(-cents if sign == '-' else cents)

    @classmethod
    def coerce(cls, value: MoneyLike) -> 'Money':
        """Accept a Money, integer cents, or a decimal string."""
        if isinstance(value, Money):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Monetary amounts must be integer cents, got {value!r}")
        return cls(value)

    # -- arithmetic -------------------------------------------------------

    def __add__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.cents + other.cents)

    def __sub__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.cents - other.cents)

    def __neg__(self) -> 'Money':
        return Money(-self.cents)

    def __int__(self) -> int:
        return self.cents

    def scale(self, numerator: int, denominator: int = 1) -> 'Money':
        """Multiply by ``numerator / denominator``, rounding to the nearest cent."""
        if denominator == 0:
            raise ZeroDivisionError("Cannot scale by a ratio with zero denominator")
        return Money(round_half_up(Fraction(self.cents * numerator, denominator)))

    def allocate(self, weights: Sequence[int]) -> List['Money']:
        """Split this amount proportionally to integer ``weights``.

        The parts always sum to this amount. When every weight is zero the
        amount is split evenly.
        """
        if not weights:
            return []
        if any(w < 0 for w in weights):
            raise ValueError("Allocation weights must be non-negative")
        total_weight = sum(weights)
        if total_weight == 0:
            weights = [1] * len(weights)
            total_weight = len(weights)
        shares = [Fraction(self.cents * w, total_weight) for w in weights]
        return [Money(part) for part in round_shares(shares)]

    @staticmethod
    def total(amounts: Iterable['Money']) -> 'Money':
        return Money(sum(m.cents for m in amounts))

    def is_negative(self) -> bool:
        return self.cents < 0

    def __str__(self) -> str:
        sign = '-' if self.cents < 0 else ''
        units, cents = divmod(abs(self.cents), 100)
        return f"{sign}{units}.{cents:02d}"
