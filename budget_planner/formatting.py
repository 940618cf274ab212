"""Formatting utilities for currency and month display."""

from __future__ import annotations

import calendar
from typing import Any, Dict, Optional

from .models import parse_month
from .settings import get_config_value


def _currency_settings() -> Dict[str, Any]:
    return get_config_value('planner', 'currency', default={}) or {}


def _group_thousands(units: int, separator: str) -> str:
    digits = str(units)
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return separator.join(groups)


def format_cents(
    cents: int,
    include_symbol: bool = True,
    symbol: Optional[str] = None,
    thousands_separator: Optional[str] = None,
    decimal_separator: Optional[str] = None,
) -> str:
    """Format integer cents for display.

    Separators and symbol default to the configured currency, so the
    default rendering is pt-BR style.

    Args:
        cents: Amount in cents
        include_symbol: Whether to prefix the currency symbol
        symbol: Override for the currency symbol
        thousands_separator: Override for the thousands separator
        decimal_separator: Override for the decimal separator

    Returns:
        Formatted currency string (e.g., "R$ 1.234,56" or "-R$ 0,05")

    Example:
        >>> format_cents(123456)
        'R$ 1.234,56'
        >>> format_cents(-5, include_symbol=False)
        '-0,05'
    """
    settings = _currency_settings()
    symbol = settings.get('symbol', 'R$') if symbol is None else symbol
    thousands = settings.get('thousands_separator', '.') if thousands_separator is None else thousands_separator
    decimal = settings.get('decimal_separator', ',') if decimal_separator is None else decimal_separator

    sign = '-' if cents < 0 else ''
    units, remainder = divmod(abs(cents), 100)
    number = f"{_group_thousands(units, thousands)}{decimal}{remainder:02d}"
    if include_symbol and symbol:
        return f"{sign}{symbol} {number}"
    return f"{sign}{number}"


def format_month_label(month: str) -> str:
    """Render a ``YYYY-MM`` key as a readable label.

    Example:
        >>> format_month_label('2025-05')
        'May 2025'
    """
    year, number = parse_month(month)
    return f"{calendar.month_name[number]} {year}"
