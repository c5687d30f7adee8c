"""AMC and warranty instantiations of the schedule engine.

Both calculators run the same engine and differ only in how a product record
is turned into a contract: the AMC starts a fixed number of years after UAT,
is worth a percentage of the invoice and uses year-specific rates; the
warranty starts at UAT (or an explicit warranty start), is worth a smaller
percentage and is spread evenly over its years.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from .data_models import ContractInput, EngineConfig, ProductRecord, ProductSchedule, ScheduleKind
from .engine import compute_schedule
from .errors import InvalidInput
from .utils import ONE_DAY, add_years

logger = logging.getLogger(__name__)


def amc_contract(record: ProductRecord, config: EngineConfig) -> ContractInput:
    """Contract input of a product's annual maintenance contract."""
    if record.invoice_value <= 0:
        raise InvalidInput("invoice_value", f"Invalid invoice value for product: {record.product_name}")
    if not 1 <= config.amc_years <= len(config.amc_rates):
        raise InvalidInput("amc_years", f"amc_years must be between 1 and {len(config.amc_rates)}")
    return ContractInput(
        contract_start=add_years(record.uat_date, config.amc_start_offset_years, "uat_date"),
        total_value=record.invoice_value * config.amc_percentage,
        rates=tuple(config.amc_rates[: config.amc_years]),
        tax_rate=config.tax_rate,
    )


def warranty_contract(record: ProductRecord, config: EngineConfig) -> ContractInput:
    """Contract input of a product's warranty, spread evenly over its years."""
    if record.invoice_value <= 0:
        raise InvalidInput("invoice_value", f"Invalid invoice value for product: {record.product_name}")
    years = config.warranty_years if record.warranty_years is None else record.warranty_years
    if years < 1:
        raise InvalidInput("warranty_years", f"warranty_years must be positive; got {years}")
    per_year = Decimal(1) / Decimal(years)
    return ContractInput(
        contract_start=record.warranty_start or record.uat_date,
        total_value=record.invoice_value * config.warranty_percentage,
        rates=tuple(per_year for _ in range(years)),
        tax_rate=config.tax_rate,
    )


def contract_for(record: ProductRecord, kind: ScheduleKind, config: EngineConfig) -> ContractInput:
    if kind is ScheduleKind.AMC:
        return amc_contract(record, config)
    return warranty_contract(record, config)


def contract_end(contract: ContractInput) -> date:
    """Last day covered by the contract."""
    return add_years(contract.contract_start, len(contract.effective_rates)) - ONE_DAY


def coverage_status(end: date, as_of: date) -> Tuple[str, int]:
    """Return ``(status, days_remaining)`` of a contract ending on ``end``."""
    days_remaining = (end - as_of).days
    if days_remaining < 0:
        status = "expired"
    elif days_remaining <= 30:
        status = "expiring_soon"
    elif days_remaining <= 90:
        status = "expiring_within_3_months"
    else:
        status = "active"
    return status, days_remaining


def calculate_product(
    record: ProductRecord, kind: ScheduleKind = ScheduleKind.AMC, config: Optional[EngineConfig] = None
) -> ProductSchedule:
    """Compute a product's AMC or warranty schedule.

    Errors propagate; batch processing turns them into error results.
    """
    config = config or EngineConfig()
    contract = contract_for(record, kind, config)
    result = compute_schedule(contract, config)
    logger.debug("%s schedule for %s: %d quarters", kind.value, record.record_id, result.total_quarters)
    return ProductSchedule(
        record_id=record.record_id,
        product_name=record.product_name,
        kind=kind,
        location=record.location,
        contract_start=contract.contract_start,
        contract_end=contract_end(contract),
        result=result,
    )
