"""Output helpers for the schedule calculator.

This module provides simple functions to render schedules, their split
details and batch summaries in a tabular text format for the terminal.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .data_models import BatchSummary, ProductSchedule, ScheduleResult


def print_summary(product: ProductSchedule, status: Optional[str] = None) -> None:
    """Print the product-level summary of a computed schedule."""
    print("Summary")
    print("-" * 72)
    print(f"Product            : {product.product_name} ({product.record_id})")
    print(f"Schedule type      : {product.kind.value.upper()}")
    if product.error:
        print(f"Error              : {product.error}")
        print("-" * 72)
        return
    result = product.result
    print(f"Contract start     : {product.contract_start.isoformat()}")
    print(f"Contract end       : {product.contract_end.isoformat()}")
    if status:
        print(f"Status             : {status}")
    print(f"Contract value     : {result.total_contract_value:.2f}")
    print(f"Quarters           : {result.total_quarters}")
    print(f"Total without tax  : {result.total_amount_without_tax:.2f}")
    print(f"Total with tax     : {result.total_amount_with_tax:.2f}")
    print("-" * 72)


def print_schedule(result: ScheduleResult, show_details: bool = False) -> None:
    """Print the quarterly schedule as a simple table.

    Parameters
    ----------
    result: ScheduleResult
        The computed schedule.
    show_details: bool
        Whether to list the contract-year contributions under each quarter.
    """
    print("\t".join(["Quarter", "WithoutTax", "WithTax"]))
    for key, entry in result.entries.items():
        print("\t".join([str(key), f"{entry.amount_without_tax:.2f}", f"{entry.amount_with_tax:.2f}"]))
        if not show_details:
            continue
        for c in entry.contributions:
            print(
                f"\t  Y{c.contract_year_index + 1} {c.calculation_type.value:<11s}"
                f" {c.overlap_days:>3d}/{c.total_days_in_quarter} days"
                f"  full {c.full_quarter_amount:.4f}  actual {c.actual_amount:.4f}"
            )


def print_batch_summary(summary: BatchSummary, failures: Iterable[ProductSchedule] = ()) -> None:
    """Print run-level statistics and the records that failed."""
    print("Batch summary")
    print("=" * 72)
    print(f"Processed          : {summary.processed}")
    print(f"Successful         : {summary.successful}")
    print(f"Errors             : {summary.errors}")
    print(f"Total with tax     : {summary.total_amount_with_tax:.2f}")
    for item in failures:
        print(f"  {item.record_id:12s} {item.product_name:24s} {item.error}")
    print("=" * 72)
