from datetime import date, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from amc_calc import engine
from amc_calc.data_models import (
    CalculationType,
    ContractInput,
    EngineConfig,
    QuarterContribution,
    QuarterKey,
    QuarterLabel,
)
from amc_calc.engine import aggregate, allocate, compute_schedule, partition, resolve_occurrences
from amc_calc.errors import InvalidInput, LogicInvariantViolation
from amc_calc.utils import round2

TOLERANCE = Decimal("1e-20")


def key(text):
    return QuarterKey.parse(text)


def test_partition_windows(roi_rates):
    windows = partition(date(2024, 3, 15), Decimal("100000"), roi_rates)
    assert [(w.start, w.end) for w in windows] == [
        (date(2024, 3, 15), date(2025, 3, 14)),
        (date(2025, 3, 15), date(2026, 3, 14)),
        (date(2026, 3, 15), date(2027, 3, 14)),
        (date(2027, 3, 15), date(2028, 3, 14)),
    ]
    assert [w.full_quarter_amount for w in windows] == [
        Decimal("5000"),
        Decimal("5625"),
        Decimal("6875"),
        Decimal("7500"),
    ]


def test_partition_windows_are_contiguous_from_leap_day():
    windows = partition(date(2024, 2, 29), Decimal("1000"), (Decimal("0.5"), Decimal("0.5")))
    assert windows[0].start == date(2024, 2, 29)
    assert windows[0].end == date(2025, 2, 27)
    assert windows[1].start == date(2025, 2, 28)
    assert windows[1].end == date(2026, 2, 27)


@pytest.mark.parametrize(
    "value, rates, field",
    [
        (Decimal("0"), (Decimal("0.2"),), "total_value"),
        (Decimal("-10"), (Decimal("0.2"),), "total_value"),
        (Decimal("1000"), (), "rates"),
        (Decimal("1000"), (Decimal("0.2"), Decimal("-0.1")), "rates"),
    ],
)
def test_partition_rejects_invalid_input(value, rates, field):
    with pytest.raises(InvalidInput) as info:
        partition(date(2024, 1, 5), value, rates)
    assert info.value.field == field


@pytest.mark.parametrize("start", [date(1, 3, 15), date(9996, 3, 15)])
def test_partition_rejects_contracts_outside_date_range(start):
    with pytest.raises(InvalidInput) as info:
        partition(start, Decimal("1000"), (Decimal("0.5"), Decimal("0.5")))
    assert info.value.field == "contract_start"


def test_huge_contract_value_reports_the_amount():
    contract = ContractInput(
        contract_start=date(2024, 3, 15),
        total_value=Decimal("1e30"),
        rates=(Decimal("1"),),
        tax_rate=Decimal("0"),
    )
    with pytest.raises(InvalidInput) as info:
        compute_schedule(contract)
    assert info.value.field == "amount"


def test_aligned_start_has_no_residuals(aligned_contract):
    result = compute_schedule(aligned_contract)

    assert result.total_quarters == 16
    assert str(next(iter(result.entries))) == "2024-JFM"
    assert str(list(result.entries)[-1]) == "2027-OND"
    for entry in result.entries.values():
        assert len(entry.contributions) == 1
        contribution = entry.contributions[0]
        assert contribution.calculation_type is CalculationType.PRORATED
        assert contribution.overlap_days == contribution.total_days_in_quarter
        assert contribution.actual_amount == contribution.full_quarter_amount

    assert result.schedule[key("2024-JFM")] == (Decimal("5900.00"), Decimal("5000.00"))
    assert result.schedule[key("2025-AMJ")] == (Decimal("6637.50"), Decimal("5625.00"))
    assert result.schedule[key("2027-OND")] == (Decimal("8850.00"), Decimal("7500.00"))
    assert result.total_amount_without_tax == Decimal("100000.00")
    assert result.total_amount_with_tax == Decimal("118000.00")


def test_mid_quarter_start_splits_boundary_quarters(mid_quarter_contract):
    result = compute_schedule(mid_quarter_contract)

    assert result.total_quarters == 17
    expected_jfm = {
        "2024-JFM": Decimal("1153.85"),
        "2025-JFM": Decimal("5158.65"),
        "2026-JFM": Decimal("5916.67"),
        "2027-JFM": Decimal("7020.83"),
        "2028-JFM": Decimal("5750.00"),
    }
    for text, amount in expected_jfm.items():
        assert result.entries[key(text)].amount_without_tax == amount
    assert result.entries[key("2024-JFM")].amount_with_tax == Decimal("1361.54")
    assert result.entries[key("2025-JFM")].amount_with_tax == Decimal("6087.21")
    for label in ("AMJ", "JAS", "OND"):
        assert result.entries[key(f"2024-{label}")].amount_without_tax == Decimal("5000.00")
        assert result.entries[key(f"2027-{label}")].amount_without_tax == Decimal("7500.00")

    first = result.entries[key("2024-JFM")].contributions
    assert len(first) == 1
    assert first[0].calculation_type is CalculationType.PRORATED
    assert (first[0].overlap_days, first[0].total_days_in_quarter) == (21, 91)

    boundary = result.entries[key("2025-JFM")].contributions
    assert [(c.contract_year_index, c.calculation_type) for c in boundary] == [
        (0, CalculationType.RESIDUAL),
        (1, CalculationType.PRORATED),
    ]
    # Prorated share plus residual always make up one full quarterly charge.
    assert first[0].actual_amount + boundary[0].actual_amount == Decimal("5000")
    assert boundary[0].actual_amount >= 0

    assert result.total_amount_without_tax == Decimal("100000.00")
    assert result.total_amount_with_tax == Decimal("118000.00")


def test_residual_is_taken_against_the_same_contract_year(mid_quarter_contract):
    """2025-JFM receives year 1's residual and year 2's prorated share at different rates."""
    result = compute_schedule(mid_quarter_contract)
    residual, prorated = result.entries[key("2025-JFM")].contributions

    assert residual.full_quarter_amount == Decimal("5000")
    assert residual.actual_amount == Decimal("5000") - Decimal("5000") * Decimal(21) / Decimal(91)
    # Not the year-2 figure recorded at the same key.
    assert residual.actual_amount != Decimal("5000") - prorated.actual_amount
    assert prorated.full_quarter_amount == Decimal("5625")
    assert prorated.actual_amount == Decimal("1312.5")
    # The residual leg lands 69 days into a 90-day quarter but is not prorated by them.
    assert (residual.overlap_days, residual.total_days_in_quarter) == (69, 90)


def test_window_starting_before_fifth_of_january_reaches_previous_ond():
    contract = ContractInput(
        contract_start=date(2024, 1, 2),
        total_value=Decimal("100000"),
        rates=(Decimal("1"),),
        tax_rate=Decimal("0"),
    )
    result = compute_schedule(contract)

    assert [str(k) for k in result.entries] == ["2023-OND", "2024-JFM", "2024-AMJ", "2024-JAS", "2024-OND"]
    head = result.entries[key("2023-OND")]
    tail = result.entries[key("2024-OND")]
    assert head.amount_without_tax == Decimal("815.22")
    assert head.contributions[0].overlap_days == 3
    assert tail.amount_without_tax == Decimal("24184.78")
    assert tail.contributions[0].calculation_type is CalculationType.RESIDUAL
    assert tail.contributions[0].overlap_days == 89
    assert result.total_amount_without_tax == Decimal("100000.00")


def test_window_day_counts_are_conserved(mid_quarter_contract):
    windows = partition(mid_quarter_contract.contract_start, mid_quarter_contract.total_value, mid_quarter_contract.rates)
    allocation = allocate(windows)
    for window in windows:
        days = sum(
            c.overlap_days
            for contributions in allocation.values()
            for c in contributions
            if c.contract_year_index == window.index
        )
        assert days == (window.end - window.start).days + 1


def test_allocate_is_idempotent(mid_quarter_contract):
    windows = partition(mid_quarter_contract.contract_start, mid_quarter_contract.total_value, mid_quarter_contract.rates)
    assert allocate(windows) == allocate(windows)


def test_later_occurrence_after_full_first_occurrence_is_no_residual():
    full = Decimal("100")
    common = dict(contract_year_index=0, rate=Decimal("0.1"), full_quarter_amount=full, total_days_in_quarter=90)
    first = QuarterContribution(
        key=key("2024-JFM"), overlap_days=90, prorated_amount=full, actual_amount=full, **common
    )
    later = QuarterContribution(
        key=key("2025-JFM"), overlap_days=5, prorated_amount=Decimal("5.5"), actual_amount=Decimal("5.5"), **common
    )
    resolved = {str(c.key): c for c in resolve_occurrences([later, first])}

    assert resolved["2024-JFM"].calculation_type is CalculationType.PRORATED
    assert resolved["2024-JFM"].actual_amount == full
    assert resolved["2025-JFM"].calculation_type is CalculationType.NO_RESIDUAL
    assert resolved["2025-JFM"].actual_amount == Decimal("0")


def test_single_occurrence_keeps_prorated_amount():
    lone = QuarterContribution(
        key=key("2024-AMJ"),
        contract_year_index=2,
        rate=Decimal("0.3"),
        full_quarter_amount=Decimal("90"),
        overlap_days=30,
        total_days_in_quarter=91,
        prorated_amount=Decimal("29.67"),
        actual_amount=Decimal("29.67"),
    )
    (resolved,) = resolve_occurrences([lone])
    assert resolved.actual_amount == Decimal("29.67")
    assert resolved.calculation_type is CalculationType.PRORATED


def test_aggregate_rounds_sum_once_then_taxes_rounded_amount():
    common = dict(
        contract_year_index=0,
        rate=Decimal("0.1"),
        full_quarter_amount=Decimal("1"),
        overlap_days=1,
        total_days_in_quarter=90,
    )
    k = key("2024-JAS")
    contributions = {
        k: [
            QuarterContribution(key=k, prorated_amount=Decimal("0.004"), actual_amount=Decimal("0.004"), **common),
            QuarterContribution(key=k, prorated_amount=Decimal("0.004"), actual_amount=Decimal("0.004"), **common),
        ]
    }
    entry = aggregate(contributions, Decimal("0.18"))[k]
    # Rounding each contribution first would give 0.00.
    assert entry.amount_without_tax == Decimal("0.01")
    assert entry.amount_with_tax == Decimal("0.01")


def test_duration_years_limits_rates(roi_rates):
    contract = ContractInput(
        contract_start=date(2024, 1, 5),
        total_value=Decimal("100000"),
        rates=roi_rates,
        duration_years=2,
    )
    result = compute_schedule(contract)
    assert result.total_quarters == 8
    assert result.total_amount_without_tax == Decimal("42500.00")

    with pytest.raises(InvalidInput) as info:
        compute_schedule(ContractInput(date(2024, 1, 5), Decimal("1000"), roi_rates, duration_years=5))
    assert info.value.field == "duration_years"


def test_negative_tax_rate_is_rejected(roi_rates):
    with pytest.raises(InvalidInput) as info:
        compute_schedule(ContractInput(date(2024, 1, 5), Decimal("1000"), roi_rates, tax_rate=Decimal("-0.1")))
    assert info.value.field == "tax_rate"


def test_empty_quarter_is_an_invariant_violation(monkeypatch, aligned_contract):
    def broken_range(label, year, start_day=5):
        return date(year, 6, 1), date(year, 5, 31)

    monkeypatch.setattr(engine, "quarter_date_range", broken_range)
    with pytest.raises(LogicInvariantViolation):
        compute_schedule(aligned_contract)


def test_custom_quarter_start_day_aligns_calendar_quarters():
    contract = ContractInput(
        contract_start=date(2024, 1, 1),
        total_value=Decimal("4000"),
        rates=(Decimal("1"),),
        tax_rate=Decimal("0"),
    )
    result = compute_schedule(contract, EngineConfig(quarter_start_day=1))
    assert [str(k) for k in result.entries] == ["2024-JFM", "2024-AMJ", "2024-JAS", "2024-OND"]
    assert all(e.amount_without_tax == Decimal("1000.00") for e in result.entries.values())


rate_lists = st.lists(
    st.integers(min_value=0, max_value=1000).map(lambda v: Decimal(v) / Decimal(1000)),
    min_size=1,
    max_size=5,
)


@settings(max_examples=75, deadline=None)
@given(
    start=st.dates(min_value=date(2000, 1, 1), max_value=date(2090, 12, 31)),
    value=st.integers(min_value=1, max_value=10_000_000).map(Decimal),
    rates=rate_lists,
    tax=st.integers(min_value=0, max_value=30).map(lambda v: Decimal(v) / Decimal(100)),
)
def test_schedule_properties(start, value, rates, tax):
    contract = ContractInput(contract_start=start, total_value=value, rates=tuple(rates), tax_rate=tax)
    result = compute_schedule(contract)

    per_year = {}
    for entry in result.entries.values():
        assert entry.amount_with_tax == round2(entry.amount_without_tax * (1 + tax))
        for c in entry.contributions:
            assert 0 <= c.overlap_days <= c.total_days_in_quarter
            assert c.actual_amount >= 0
            per_year[c.contract_year_index] = per_year.get(c.contract_year_index, Decimal("0")) + c.actual_amount

    # Every contract year bills exactly four full quarterly charges.
    for window in result.windows:
        assert abs(per_year.get(window.index, Decimal("0")) - 4 * window.full_quarter_amount) < TOLERANCE

    assert abs(result.total_amount_without_tax - result.expected_amount_without_tax) <= Decimal("0.01") * result.total_quarters
    keys = list(result.entries)
    assert keys == sorted(keys)


@settings(max_examples=50, deadline=None)
@given(start=st.dates(min_value=date(2000, 1, 1), max_value=date(2090, 12, 31)))
def test_each_window_day_is_counted_once(start):
    windows = partition(start, Decimal("1000"), (Decimal("0.5"), Decimal("0.5")))
    allocation = allocate(windows)
    for window in windows:
        covered = sum(c.overlap_days for cs in allocation.values() for c in cs if c.contract_year_index == window.index)
        assert covered == (window.end - window.start).days + 1
    assert windows[1].start == windows[0].end + timedelta(days=1)
