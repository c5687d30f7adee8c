"""Core calculation engine for the schedule calculator.

This module implements the quarter-overlap proration engine shared by the AMC
and warranty calculators. A contract is cut into contract years (each carrying
four equal quarterly charges at that year's rate); every contract year is laid
over the calendar quarters it touches and charged by day overlap. When the
contract start is not on a quarter boundary one quarter label is touched twice
by the same contract year: the first occurrence is charged its prorated share
and the later occurrence collects the residual, so every contract year bills
exactly four full quarterly charges. Results are returned as a
``ScheduleResult``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import MAXYEAR, MINYEAR, date
from decimal import Decimal, getcontext
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .data_models import (
    CalculationType,
    ContractInput,
    ContractYearWindow,
    EngineConfig,
    QuarterContribution,
    QuarterKey,
    QuarterLabel,
    ScheduleEntry,
    ScheduleResult,
)
from .errors import InvalidInput, LogicInvariantViolation
from .quarters import quarter_date_range
from .utils import CENT, ONE_DAY, add_years, overlap, round2

getcontext().prec = 28  # increase precision for financial calculations

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def partition(contract_start: date, total_value: Decimal, rates: Sequence[Decimal]) -> List[ContractYearWindow]:
    """Cut a contract into contract-year windows.

    Window ``i`` runs from ``contract_start + i`` years to the day before
    ``contract_start + i + 1`` years and charges
    ``total_value * rates[i] / 4`` per quarter.

    Raises
    ------
    InvalidInput
        If ``rates`` is empty or holds a negative rate, ``total_value`` is
        not positive, or the contract (plus the year of quarters scanned on
        either side) does not fit in the supported date range.
    """
    if total_value is None or total_value <= 0:
        raise InvalidInput("total_value", f"Total contract value must be positive; got {total_value}")
    if not rates:
        raise InvalidInput("rates", "At least one contract-year rate is required")
    if contract_start.year - 1 < MINYEAR or contract_start.year + len(rates) + 2 > MAXYEAR:
        raise InvalidInput(
            "contract_start", f"Contract starting {contract_start.isoformat()} is outside the supported date range"
        )
    windows: List[ContractYearWindow] = []
    for i, rate in enumerate(rates):
        if rate < 0:
            raise InvalidInput("rates", f"Rate for contract year {i + 1} must not be negative; got {rate}")
        windows.append(
            ContractYearWindow(
                index=i,
                start=add_years(contract_start, i),
                end=add_years(contract_start, i + 1) - ONE_DAY,
                rate=rate,
                full_quarter_amount=total_value * rate / Decimal(4),
            )
        )
    return windows


def _scan_window(window: ContractYearWindow, config: EngineConfig) -> List[QuarterContribution]:
    """Return the prorated contributions of one window, one per overlapped quarter."""
    contributions: List[QuarterContribution] = []
    # One year of margin on both sides: a window starting on 1-4 January
    # overlaps the OND quarter that started the year before.
    for year in range(window.start.year - 1, window.end.year + 2):
        for label in config.quarter_labels:
            q_start, q_end = quarter_date_range(label, year, config.quarter_start_day)
            whole = overlap(q_start, q_end, q_start, q_end)
            if whole is None or whole.days <= 0:
                raise LogicInvariantViolation(f"Quarter {year}-{label.value} has no days ({q_start} to {q_end})")
            hit = overlap(q_start, q_end, window.start, window.end)
            if hit is None:
                continue
            total_days = whole.days
            prorated = window.full_quarter_amount * Decimal(hit.days) / Decimal(total_days)
            contributions.append(
                QuarterContribution(
                    key=QuarterKey(q_start.year, label),
                    contract_year_index=window.index,
                    rate=window.rate,
                    full_quarter_amount=window.full_quarter_amount,
                    overlap_days=hit.days,
                    total_days_in_quarter=total_days,
                    prorated_amount=prorated,
                    actual_amount=prorated,
                )
            )
    return contributions


def resolve_occurrences(contributions: Iterable[QuarterContribution]) -> List[QuarterContribution]:
    """Apply the first-occurrence / residual rule.

    Contributions are grouped by quarter label and contract year. Within a
    group the earliest display year keeps its prorated amount; every later
    occurrence is charged ``max(0, full_quarter_amount - first.prorated_amount)``.
    Groups with a single occurrence are returned unchanged.
    """
    groups: Dict[Tuple[QuarterLabel, int], List[QuarterContribution]] = defaultdict(list)
    for c in contributions:
        groups[(c.key.label, c.contract_year_index)].append(c)

    resolved: List[QuarterContribution] = []
    for occurrences in groups.values():
        occurrences.sort(key=lambda c: c.key.year)
        first = occurrences[0]
        resolved.append(replace(first, actual_amount=first.prorated_amount, calculation_type=CalculationType.PRORATED))
        for later in occurrences[1:]:
            residual = later.full_quarter_amount - first.prorated_amount
            if residual > ZERO:
                resolved.append(replace(later, actual_amount=residual, calculation_type=CalculationType.RESIDUAL))
            else:
                resolved.append(replace(later, actual_amount=ZERO, calculation_type=CalculationType.NO_RESIDUAL))
    return resolved


def allocate(
    windows: Sequence[ContractYearWindow], config: Optional[EngineConfig] = None
) -> Dict[QuarterKey, List[QuarterContribution]]:
    """Map contract-year windows onto calendar quarters.

    Returns the contributions received by each quarter instance, keys in
    chronological order and contributions in contract-year order.
    """
    config = config or EngineConfig()
    raw: List[QuarterContribution] = []
    for window in windows:
        raw.extend(_scan_window(window, config))

    by_key: Dict[QuarterKey, List[QuarterContribution]] = defaultdict(list)
    for c in resolve_occurrences(raw):
        by_key[c.key].append(c)
    return {
        key: sorted(by_key[key], key=lambda c: c.contract_year_index)
        for key in sorted(by_key)
    }


def aggregate(
    contributions: Dict[QuarterKey, List[QuarterContribution]], tax_rate: Decimal
) -> Dict[QuarterKey, ScheduleEntry]:
    """Sum each quarter's contributions and apply tax.

    The pre-tax sum is rounded once, and the taxed amount is computed from the
    rounded pre-tax amount and rounded once more.
    """
    entries: Dict[QuarterKey, ScheduleEntry] = {}
    for key in sorted(contributions):
        items = contributions[key]
        without_tax = round2(sum((c.actual_amount for c in items), ZERO))
        with_tax = round2(without_tax * (Decimal(1) + tax_rate))
        entries[key] = ScheduleEntry(
            key=key,
            contributions=tuple(items),
            amount_without_tax=without_tax,
            amount_with_tax=with_tax,
        )
    return entries


def compute_schedule(contract: ContractInput, config: Optional[EngineConfig] = None) -> ScheduleResult:
    """Compute the quarterly schedule of one contract.

    Parameters
    ----------
    contract: ContractInput
        Start date, total value, per-year rates and tax rate.
    config: EngineConfig
        Quarter convention; defaults to the standard 5th-of-month quarters.

    Returns
    -------
    ScheduleResult
        Schedule entries keyed by quarter together with the contract-year
        windows they were derived from.
    """
    config = config or EngineConfig()
    if contract.tax_rate is None or contract.tax_rate < 0:
        raise InvalidInput("tax_rate", f"Tax rate must not be negative; got {contract.tax_rate}")
    windows = partition(contract.contract_start, contract.total_value, contract.effective_rates)
    entries = aggregate(allocate(windows, config), contract.tax_rate)
    result = ScheduleResult(contract=contract, windows=tuple(windows), entries=entries)

    difference = abs(result.total_amount_without_tax - result.expected_amount_without_tax)
    if difference > CENT * max(result.total_quarters, 1):
        logger.warning(
            "Schedule total %s differs from expected %s by %s (start %s)",
            result.total_amount_without_tax,
            result.expected_amount_without_tax,
            difference,
            contract.contract_start.isoformat(),
        )
    logger.debug(
        "Computed %d quarters from %d contract years starting %s",
        result.total_quarters,
        len(windows),
        contract.contract_start.isoformat(),
    )
    return result
