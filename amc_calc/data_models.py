"""Data models for the schedule calculator.

This module defines dataclasses representing the entities used by the
calculator: calendar quarter keys, the normalized contract input, contract
year windows, per-quarter contributions, schedule entries and the per-record
result. Engine configuration is an explicit dataclass passed into every call,
so there is no module-level mutable state.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field, fields, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidInput
from .utils import decimal_from_value, fraction_from_value, parse_date, round2


class QuarterLabel(Enum):
    """The four calendar quarter buckets, in cyclic order."""

    JFM = "JFM"
    AMJ = "AMJ"
    JAS = "JAS"
    OND = "OND"

    @property
    def index(self) -> int:
        return _LABEL_ORDER[self]

    @property
    def start_month(self) -> int:
        return 3 * self.index + 1

    def __str__(self) -> str:
        return self.value


_LABEL_ORDER = {label: i for i, label in enumerate(QuarterLabel)}


@functools.total_ordering
@dataclass(frozen=True)
class QuarterKey:
    """A calendar quarter instance: label plus display year.

    The display year is the calendar year the quarter starts in, so the OND
    quarter running into January is keyed by the earlier year.
    """

    year: int
    label: QuarterLabel

    def __lt__(self, other: "QuarterKey") -> bool:
        if not isinstance(other, QuarterKey):
            return NotImplemented
        return (self.year, self.label.index) < (other.year, other.label.index)

    def __str__(self) -> str:
        return f"{self.year}-{self.label.value}"

    @classmethod
    def parse(cls, text: str) -> "QuarterKey":
        """Parse a ``"{year}-{label}"`` string such as ``"2024-JFM"``."""
        year_part, sep, label_part = text.strip().rpartition("-")
        try:
            if not sep:
                raise ValueError
            return cls(year=int(year_part), label=QuarterLabel(label_part.upper()))
        except ValueError as exc:
            raise InvalidInput("quarter", f"Invalid quarter key: {text!r}") from exc


class CalculationType(Enum):
    """How a contribution's actual amount was derived."""

    PRORATED = "prorated"
    RESIDUAL = "residual"
    NO_RESIDUAL = "no-residual"


class ScheduleKind(Enum):
    """Which instantiation of the engine a product record is run through."""

    AMC = "amc"
    WARRANTY = "warranty"


@dataclass(frozen=True)
class EngineConfig:
    """Configuration of the schedule engine.

    The defaults are the business constants of the AMC and warranty
    calculators: quarters starting on the 5th of January/April/July/October,
    18 % GST, AMC worth 40 % of the invoice starting three years after UAT
    with year rates of 20/22.5/27.5/30 %, and a 15 % warranty spread evenly
    over three years.
    """

    quarter_labels: Tuple[QuarterLabel, ...] = tuple(QuarterLabel)
    quarter_start_day: int = 5
    tax_rate: Decimal = Decimal("0.18")
    amc_rates: Tuple[Decimal, ...] = (
        Decimal("0.20"),
        Decimal("0.225"),
        Decimal("0.275"),
        Decimal("0.30"),
    )
    amc_percentage: Decimal = Decimal("0.40")
    amc_years: int = 4
    amc_start_offset_years: int = 3
    warranty_percentage: Decimal = Decimal("0.15")
    warranty_years: int = 3
    chunk_size: int = 1000
    progress_interval: int = 100

    def __post_init__(self) -> None:
        if not 1 <= self.quarter_start_day <= 28:
            raise InvalidInput("quarter_start_day", "quarter_start_day must be between 1 and 28")
        if sorted(self.quarter_labels, key=lambda q: q.index) != list(QuarterLabel):
            raise InvalidInput("quarter_labels", "quarter_labels must name each quarter exactly once")
        if self.tax_rate < 0:
            raise InvalidInput("tax_rate", "tax_rate must not be negative")
        if self.chunk_size < 1:
            raise InvalidInput("chunk_size", "chunk_size must be positive")
        if self.progress_interval < 1:
            raise InvalidInput("progress_interval", "progress_interval must be positive")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """Return ``base`` (or the defaults) with the values in ``data`` applied.

        Rates and percentages may be given as fractions or percentages
        (``0.18`` or ``18``). Unknown keys are rejected.
        """
        base = base or cls()
        known = {f.name for f in fields(cls)}
        changes: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise InvalidInput(key, f"Unknown configuration key: {key}")
            if value is None:
                continue
            if key == "quarter_labels":
                try:
                    changes[key] = tuple(QuarterLabel(str(v).upper()) for v in value)
                except ValueError as exc:
                    raise InvalidInput(key, f"Invalid quarter labels: {value!r}") from exc
            elif key == "amc_rates":
                if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
                    raise InvalidInput(key, "amc_rates must be a list")
                changes[key] = tuple(fraction_from_value(v, key) for v in value)
            elif key in ("tax_rate", "amc_percentage", "warranty_percentage"):
                changes[key] = fraction_from_value(value, key)
            else:
                try:
                    changes[key] = int(value)
                except (TypeError, ValueError) as exc:
                    raise InvalidInput(key, f"{key} must be an integer") from exc
        return replace(base, **changes)


@dataclass(frozen=True)
class ContractInput:
    """Normalized input of one schedule calculation.

    ``rates`` holds one fraction per contract year. When ``duration_years``
    is given only the first ``duration_years`` rates are used.
    """

    contract_start: date
    total_value: Decimal
    rates: Tuple[Decimal, ...]
    tax_rate: Decimal = Decimal("0.18")
    duration_years: Optional[int] = None

    @property
    def effective_rates(self) -> Tuple[Decimal, ...]:
        if self.duration_years is None:
            return tuple(self.rates)
        if self.duration_years < 1 or self.duration_years > len(self.rates):
            raise InvalidInput(
                "duration_years",
                f"duration_years must be between 1 and {len(self.rates)}; got {self.duration_years}",
            )
        return tuple(self.rates[: self.duration_years])


@dataclass(frozen=True)
class ContractYearWindow:
    """One contract year and the undivided charge of each of its quarters."""

    index: int
    start: date
    end: date
    rate: Decimal
    full_quarter_amount: Decimal


@dataclass(frozen=True)
class QuarterContribution:
    """The share of one contract year landing in one calendar quarter.

    ``prorated_amount`` is the day-proportional share of the contract year's
    full quarter amount. ``actual_amount`` is what is billed after the
    first-occurrence/residual rule has been applied.
    """

    key: QuarterKey
    contract_year_index: int
    rate: Decimal
    full_quarter_amount: Decimal
    overlap_days: int
    total_days_in_quarter: int
    prorated_amount: Decimal
    actual_amount: Decimal
    calculation_type: CalculationType = CalculationType.PRORATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_year_index": self.contract_year_index,
            "rate": float(self.rate),
            "full_quarter_amount": float(self.full_quarter_amount),
            "prorated_amount": float(self.prorated_amount),
            "actual_amount": float(self.actual_amount),
            "calculation_type": self.calculation_type.value,
            "overlap_days": self.overlap_days,
            "total_days_in_quarter": self.total_days_in_quarter,
        }


@dataclass(frozen=True)
class ScheduleEntry:
    """Billed amounts of one calendar quarter and how they were derived."""

    key: QuarterKey
    contributions: Tuple[QuarterContribution, ...]
    amount_without_tax: Decimal
    amount_with_tax: Decimal


@dataclass(frozen=True)
class ScheduleResult:
    """Schedule computed for one contract.

    ``entries`` is keyed by :class:`QuarterKey` and iterates chronologically.
    """

    contract: ContractInput
    windows: Tuple[ContractYearWindow, ...]
    entries: Dict[QuarterKey, ScheduleEntry]

    @property
    def schedule(self) -> Dict[QuarterKey, Tuple[Decimal, Decimal]]:
        return {k: (e.amount_with_tax, e.amount_without_tax) for k, e in self.entries.items()}

    @property
    def split_details(self) -> Dict[QuarterKey, Tuple[QuarterContribution, ...]]:
        return {k: e.contributions for k, e in self.entries.items()}

    @property
    def total_contract_value(self) -> Decimal:
        return self.contract.total_value

    @property
    def total_quarters(self) -> int:
        return len(self.entries)

    @property
    def total_amount_with_tax(self) -> Decimal:
        return round2(sum((e.amount_with_tax for e in self.entries.values()), Decimal("0")))

    @property
    def total_amount_without_tax(self) -> Decimal:
        return round2(sum((e.amount_without_tax for e in self.entries.values()), Decimal("0")))

    @property
    def expected_amount_without_tax(self) -> Decimal:
        return round2(self.contract.total_value * sum((w.rate for w in self.windows), Decimal("0")))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule": {
                str(k): {
                    "amount_with_tax": float(e.amount_with_tax),
                    "amount_without_tax": float(e.amount_without_tax),
                }
                for k, e in self.entries.items()
            },
            "split_details": {
                str(k): [c.to_dict() for c in e.contributions] for k, e in self.entries.items()
            },
            "summary": {
                "total_contract_value": float(self.total_contract_value),
                "total_quarters": self.total_quarters,
                "total_amount_with_tax": float(self.total_amount_with_tax),
            },
        }


@dataclass(frozen=True)
class ProductRecord:
    """A purchased item as handed over by the spreadsheet/parsing layer.

    ``invoice_value`` is the line value the AMC and warranty percentages are
    applied to; ``quantity`` is informational.
    """

    record_id: str
    product_name: str
    invoice_value: Decimal
    uat_date: date
    quantity: int = 1
    location: str = "Unknown Location"
    warranty_start: Optional[date] = None
    warranty_years: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], default_id: Optional[str] = None) -> "ProductRecord":
        """Build a record from a mapping that uses the canonical field names."""
        record_id = data.get("record_id") or default_id
        if record_id is None or str(record_id).strip() == "":
            raise InvalidInput("record_id", "Record is missing record_id")
        if data.get("invoice_value") in (None, ""):
            raise InvalidInput("invoice_value", f"Record {record_id} is missing invoice_value")
        warranty_start = data.get("warranty_start")
        warranty_years = data.get("warranty_years")
        quantity = _optional_int(data.get("quantity"), "quantity")
        if quantity is not None and quantity < 0:
            raise InvalidInput("quantity", f"Record {record_id} has a negative quantity: {quantity}")
        return cls(
            record_id=str(record_id),
            product_name=str(data.get("product_name") or "Unknown Product"),
            invoice_value=decimal_from_value(data["invoice_value"], "invoice_value"),
            uat_date=parse_date(data.get("uat_date"), "uat_date"),
            quantity=1 if quantity is None else quantity,
            location=str(data.get("location") or "Unknown Location"),
            warranty_start=parse_date(warranty_start, "warranty_start") if warranty_start else None,
            warranty_years=_optional_int(warranty_years, "warranty_years"),
        )


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(field_name, f"{field_name} must be an integer; got {value!r}") from exc


@dataclass
class ProductSchedule:
    """Per-product result: identity, contract dates and the schedule.

    A record that failed carries ``error`` and no ``result``.
    """

    record_id: str
    product_name: str
    kind: ScheduleKind
    location: str = ""
    contract_start: Optional[date] = None
    contract_end: Optional[date] = None
    result: Optional[ScheduleResult] = None
    error: Optional[str] = None
    error_field: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def total_amount_with_tax(self) -> Decimal:
        return self.result.total_amount_with_tax if self.result else Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "record_id": self.record_id,
            "product_name": self.product_name,
            "kind": self.kind.value,
            "location": self.location,
        }
        if self.error is not None:
            data.update({"error": self.error, "field": self.error_field, "schedule": {}})
            return data
        data["contract_start"] = self.contract_start.isoformat() if self.contract_start else None
        data["contract_end"] = self.contract_end.isoformat() if self.contract_end else None
        if self.result is not None:
            data.update(self.result.to_dict())
        return data


@dataclass
class BatchSummary:
    """Run-level statistics of a batch or of a single chunk."""

    processed: int = 0
    successful: int = 0
    errors: int = 0
    total_amount_with_tax: Decimal = Decimal("0")
    error_records: List[str] = field(default_factory=list)

    def add(self, item: ProductSchedule) -> None:
        self.processed += 1
        if item.ok:
            self.successful += 1
            self.total_amount_with_tax += item.total_amount_with_tax
        else:
            self.errors += 1
            self.error_records.append(item.record_id)

    def merge(self, other: "BatchSummary") -> None:
        self.processed += other.processed
        self.successful += other.successful
        self.errors += other.errors
        self.total_amount_with_tax += other.total_amount_with_tax
        self.error_records.extend(other.error_records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "errors": self.errors,
            "total_amount_with_tax": float(round2(self.total_amount_with_tax)),
            "error_records": list(self.error_records),
        }
