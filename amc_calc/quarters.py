"""Calendar quarter model.

Quarters in this system do not start on the 1st: each starts on the 5th of
January, April, July and October, and the OND quarter runs into January of the
following year, ending on the 4th. A quarter instance is identified by its
label and the year it starts in.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Tuple

from .data_models import EngineConfig, QuarterKey, QuarterLabel
from .utils import ONE_DAY, days_inclusive

DEFAULT_START_DAY = 5


def quarter_date_range(label: QuarterLabel, year: int, start_day: int = DEFAULT_START_DAY) -> Tuple[date, date]:
    """Return the inclusive ``(start, end)`` dates of ``label`` in ``year``."""
    start = date(year, label.start_month, start_day)
    if label is QuarterLabel.OND:
        next_start = date(year + 1, 1, start_day)
    else:
        next_start = date(year, label.start_month + 3, start_day)
    return start, next_start - ONE_DAY


def quarter_length(label: QuarterLabel, year: int, start_day: int = DEFAULT_START_DAY) -> int:
    """Inclusive number of days in a quarter instance."""
    return days_inclusive(*quarter_date_range(label, year, start_day))


def quarters_for_year(year: int, config: Optional[EngineConfig] = None) -> List[Tuple[QuarterKey, date, date]]:
    """The four quarter instances starting in ``year``, in configured order."""
    config = config or EngineConfig()
    result = []
    for label in config.quarter_labels:
        start, end = quarter_date_range(label, year, config.quarter_start_day)
        result.append((QuarterKey(year, label), start, end))
    return result


def quarter_containing(day: date, config: Optional[EngineConfig] = None) -> QuarterKey:
    """Return the quarter instance ``day`` falls in.

    Days before the first quarter start of a year belong to the previous
    year's OND quarter.
    """
    config = config or EngineConfig()
    if (day.month, day.day) < (1, config.quarter_start_day):
        return QuarterKey(day.year - 1, QuarterLabel.OND)
    month_offset = day.month - 1
    if day.day < config.quarter_start_day and month_offset % 3 == 0:
        month_offset -= 1
    return QuarterKey(day.year, list(QuarterLabel)[month_offset // 3])
