"""Utility functions for the schedule calculator.

This module provides helpers for turning loosely typed input (strings from a
CSV file, JSON numbers, form fields) into ``date`` and ``Decimal`` values, for
calendar-year arithmetic and for the inclusive day-interval intersection the
allocation engine is built on. Day counts use plain ``date`` subtraction, so
they are exact across leap years.
"""

from __future__ import annotations

import calendar
from datetime import MAXYEAR, MINYEAR, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, getcontext
from typing import Any, NamedTuple, Optional

from .errors import InvalidInput

getcontext().prec = 28  # increase decimal precision to avoid rounding errors

CENT = Decimal("0.01")
ONE_DAY = timedelta(days=1)

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


class Overlap(NamedTuple):
    """Intersection of two inclusive date ranges."""

    start: date
    end: date
    days: int


def parse_date(value: Any, field: str = "date") -> date:
    """Parse a calendar date.

    ``date`` and ``datetime`` instances are accepted as they are. Strings may
    use ISO ``YYYY-MM-DD`` or the day-first ``DD/MM/YYYY`` spreadsheet form.

    Raises
    ------
    InvalidInput
        If the value is empty or not a recognisable date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(field, f"Invalid date for {field}: {value!r}")
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise InvalidInput(field, f"Invalid date for {field}: {value!r}")


def decimal_from_value(value: Any, field: str = "value") -> Decimal:
    """Convert a number or numeric string into a ``Decimal``.

    Commas are stripped from strings. Floats go through ``str`` so that
    ``0.2`` becomes ``Decimal("0.2")`` rather than its binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise InvalidInput(field, f"Invalid numeric value for {field}: {value!r}")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.replace(",", "").strip())
        except InvalidOperation as exc:
            raise InvalidInput(field, f"Invalid numeric value for {field}: {value!r}") from exc
    else:
        raise InvalidInput(field, f"Invalid numeric value for {field}: {value!r}")
    if not result.is_finite():
        raise InvalidInput(field, f"Invalid numeric value for {field}: {value!r}")
    return result


def fraction_from_value(value: Any, field: str = "rate") -> Decimal:
    """Parse a rate given either as a fraction (``0.2``) or a percentage.

    Strings may carry a trailing ``%``. Numbers above 1 are read as
    percentages, so ``20`` and ``"20%"`` both yield ``Decimal("0.2")``.
    The boundary is exclusive: ``1`` is a fraction (100 %) while ``1.5`` is
    a percentage (1.5 %). Use ``"1%"`` for one percent.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            return decimal_from_value(text[:-1], field) / Decimal(100)
        value = text
    result = decimal_from_value(value, field)
    if result > 1:
        result = result / Decimal(100)
    return result


def round2(value: Decimal, field: str = "amount") -> Decimal:
    """Round half-up to currency precision.

    Amounts too large to carry two decimals within the context precision
    raise :class:`InvalidInput` for ``field``.
    """
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidInput(field, f"Amount {value} is too large to round to cents") from exc


def add_years(dt: date, years: int, field: str = "date") -> date:
    """Return the same calendar day ``years`` later.

    29 February is clamped to 28 February in non-leap years. Results outside
    the years ``date`` supports raise :class:`InvalidInput` for ``field``.
    """
    year = dt.year + years
    if not MINYEAR <= year <= MAXYEAR:
        raise InvalidInput(field, f"{dt.isoformat()} plus {years} years is outside the supported date range")
    day = min(dt.day, calendar.monthrange(year, dt.month)[1])
    return date(year, dt.month, day)


def days_inclusive(start: date, end: date) -> int:
    """Number of days in ``[start, end]``."""
    return (end - start).days + 1


def overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> Optional[Overlap]:
    """Intersect two inclusive date ranges.

    Returns ``None`` when the ranges are disjoint, otherwise the overlapping
    range together with its inclusive day count.
    """
    if a_end < b_start or a_start > b_end:
        return None
    start = max(a_start, b_start)
    end = min(a_end, b_end)
    return Overlap(start=start, end=end, days=days_inclusive(start, end))
