"""Command‑line interface for the schedule calculator.

This module uses the ``click`` library to implement a multi‑command
interface. Users can list the quarter calendar of a year, compute the
schedule of a raw contract or of a single product (AMC or warranty), and run
a whole file of product records as a batch. Results can be printed to the
terminal or exported to JSON.
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from .batch import ChunkComplete, ProgressMessage, process_all
from .data_models import ContractInput, EngineConfig, ProductRecord, ScheduleKind
from .engine import compute_schedule
from .errors import InvalidInput
from .formatter import print_batch_summary, print_schedule, print_summary
from .products import calculate_product, coverage_status
from .quarters import quarters_for_year
from .utils import decimal_from_value, fraction_from_value, parse_date

logger = logging.getLogger(__name__)


def parse_amount(value: str) -> str:
    """Expand shorthand amounts such as ``"250k"`` or ``"1.2m"``.

    Returns a plain numeric string suitable for ``Decimal``.
    """
    value = value.strip().lower().replace(",", "")
    factor = 1
    if value.endswith("k"):
        factor = 1_000
        value = value[:-1]
    elif value.endswith("m"):
        factor = 1_000_000
        value = value[:-1]
    try:
        return str(decimal_from_value(value, "amount") * factor)
    except InvalidInput:
        raise click.BadParameter(f"Invalid amount: {value}")


def build_engine_config(
    tax_rate: Optional[str] = None,
    amc_rates: Tuple[str, ...] = (),
    amc_percentage: Optional[str] = None,
    warranty_percentage: Optional[str] = None,
    chunk_size: Optional[int] = None,
) -> EngineConfig:
    overrides: Dict[str, Any] = {
        "tax_rate": tax_rate,
        "amc_rates": list(amc_rates) or None,
        "amc_years": len(amc_rates) or None,
        "amc_percentage": amc_percentage,
        "warranty_percentage": warranty_percentage,
        "chunk_size": chunk_size,
    }
    try:
        return EngineConfig.from_mapping(overrides)
    except InvalidInput as exc:
        raise click.BadParameter(str(exc), param_hint=f"--{exc.field.replace('_', '-')}")


def load_records(path: Path) -> List[Dict[str, Any]]:
    """Read product records from a JSON list or a CSV file with a header row."""
    suffix = path.suffix.lower()
    if suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("records", [])
        if not isinstance(data, list):
            raise click.BadParameter("JSON input must be a list of records", param_hint="INPUT")
        return data
    if suffix == ".csv":
        with path.open("r", newline="", encoding="utf-8") as f:
            return [dict(row) for row in csv.DictReader(f)]
    raise click.BadParameter("Unsupported input format; use .json or .csv", param_hint="INPUT")


def export_to_json(path: Path, data: Dict[str, Any]) -> None:
    """Export a serialized result to a JSON file."""
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _require_json(output: Optional[str]) -> Optional[Path]:
    if not output:
        return None
    path = Path(output)
    if path.suffix.lower() != ".json":
        raise click.BadParameter("Unsupported output format; use .json", param_hint="--output")
    return path


@click.group()
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
def cli(verbose: int) -> None:
    """Quarterly AMC and warranty schedule calculator."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@cli.command()
@click.argument("year", type=int)
def quarters(year: int) -> None:
    """Print the date ranges of the four quarters starting in YEAR."""
    for key, start, end in quarters_for_year(year):
        click.echo(f"{key}\t{start.isoformat()}\t{end.isoformat()}\t{(end - start).days + 1} days")


@cli.command()
@click.option("--start", "start", required=True, help="Contract start date (YYYY-MM-DD)")
@click.option("--value", "value", required=True, help="Total contract value")
@click.option("--rate", "rates", multiple=True, required=True, help="Contract-year rate, one per year (0.2 or 20)")
@click.option("--tax-rate", "tax_rate", default="0.18", show_default=True, help="Tax rate (0.18 or 18)")
@click.option("--details", is_flag=True, help="Show how each quarter's amount was derived")
@click.option("--output", "output", type=str, help="Output file path (.json)")
def contract(start: str, value: str, rates: Tuple[str, ...], tax_rate: str, details: bool, output: Optional[str]) -> None:
    """Compute the schedule of a contract given its start, value and rates."""
    path = _require_json(output)
    try:
        contract_input = ContractInput(
            contract_start=parse_date(start, "start"),
            total_value=decimal_from_value(parse_amount(value), "value"),
            rates=tuple(fraction_from_value(r, "rate") for r in rates),
            tax_rate=fraction_from_value(tax_rate, "tax_rate"),
        )
        result = compute_schedule(contract_input)
    except InvalidInput as exc:
        raise click.BadParameter(str(exc), param_hint=f"--{exc.field.replace('_', '-')}")
    if path:
        export_to_json(path, result.to_dict())
        click.echo(f"Schedule exported to {path}")
        return
    print_schedule(result, show_details=details)
    click.echo(f"Total without tax: {result.total_amount_without_tax:.2f}")
    click.echo(f"Total with tax   : {result.total_amount_with_tax:.2f}")


@cli.command()
@click.option("--kind", "kind", type=click.Choice(["amc", "warranty"]), default="amc", help="Schedule type")
@click.option("--name", "name", default="Product", help="Product name")
@click.option("--invoice-value", "-i", "invoice_value", required=True, help="Invoice value of the product")
@click.option("--uat-date", "-u", "uat_date", required=True, help="UAT / installation date (YYYY-MM-DD)")
@click.option("--warranty-start", "warranty_start", help="Warranty start date when it differs from UAT")
@click.option("--warranty-years", "warranty_years", type=int, help="Warranty length in years")
@click.option("--tax-rate", "tax_rate", help="Tax rate (0.18 or 18)")
@click.option("--amc-rate", "amc_rates", multiple=True, help="AMC year rate, one per year (20 or 0.2)")
@click.option("--amc-percentage", "amc_percentage", help="Share of the invoice value covered by the AMC")
@click.option("--warranty-percentage", "warranty_percentage", help="Share of the invoice value covered by the warranty")
@click.option("--as-of", "as_of", help="Date the coverage status is evaluated at (default today)")
@click.option("--details", is_flag=True, help="Show how each quarter's amount was derived")
@click.option("--output", "output", type=str, help="Output file path (.json)")
def product(
    kind: str,
    name: str,
    invoice_value: str,
    uat_date: str,
    warranty_start: Optional[str],
    warranty_years: Optional[int],
    tax_rate: Optional[str],
    amc_rates: Tuple[str, ...],
    amc_percentage: Optional[str],
    warranty_percentage: Optional[str],
    as_of: Optional[str],
    details: bool,
    output: Optional[str],
) -> None:
    """Compute the AMC or warranty schedule of a single product."""
    path = _require_json(output)
    config = build_engine_config(tax_rate, amc_rates, amc_percentage, warranty_percentage)
    try:
        record = ProductRecord.from_dict(
            {
                "record_id": "1",
                "product_name": name,
                "invoice_value": parse_amount(invoice_value),
                "uat_date": uat_date,
                "warranty_start": warranty_start,
                "warranty_years": warranty_years,
            }
        )
        outcome = calculate_product(record, ScheduleKind(kind), config)
        reference = parse_date(as_of, "as_of") if as_of else date.today()
    except InvalidInput as exc:
        raise click.BadParameter(str(exc), param_hint=f"--{exc.field.replace('_', '-')}")
    if path:
        export_to_json(path, outcome.to_dict())
        click.echo(f"Schedule exported to {path}")
        return
    status, days_remaining = coverage_status(outcome.contract_end, reference)
    print_summary(outcome, status=f"{status} ({days_remaining} days remaining)")
    print_schedule(outcome.result, show_details=details)


@cli.command()
@click.argument("input_path", metavar="INPUT", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--kind", "kind", type=click.Choice(["amc", "warranty"]), default="amc", help="Schedule type")
@click.option("--tax-rate", "tax_rate", help="Tax rate (0.18 or 18)")
@click.option("--amc-rate", "amc_rates", multiple=True, help="AMC year rate, one per year (20 or 0.2)")
@click.option("--amc-percentage", "amc_percentage", help="Share of the invoice value covered by the AMC")
@click.option("--warranty-percentage", "warranty_percentage", help="Share of the invoice value covered by the warranty")
@click.option("--chunk-size", "chunk_size", type=click.IntRange(min=1), help="Records per chunk")
@click.option("--workers", "workers", type=click.IntRange(min=1), default=1, show_default=True, help="Parallel chunk workers")
@click.option("--output", "output", type=str, help="Output file path (.json)")
def batch(
    input_path: Path,
    kind: str,
    tax_rate: Optional[str],
    amc_rates: Tuple[str, ...],
    amc_percentage: Optional[str],
    warranty_percentage: Optional[str],
    chunk_size: Optional[int],
    workers: int,
    output: Optional[str],
) -> None:
    """Compute schedules for every product record in INPUT (.json or .csv)."""
    path = _require_json(output)
    config = build_engine_config(tax_rate, amc_rates, amc_percentage, warranty_percentage, chunk_size)
    records = load_records(input_path)
    progress: Dict[int, int] = {}

    with click.progressbar(length=len(records), label="Calculating", file=click.get_text_stream("stderr")) as bar:

        def on_message(message) -> None:
            if isinstance(message, ProgressMessage):
                previous = progress.get(message.chunk_index, 0)
                progress[message.chunk_index] = message.processed
                bar.update(message.processed - previous)
            elif isinstance(message, ChunkComplete):
                logger.info("Chunk %d/%d complete", message.chunk_index + 1, message.total_chunks)

        result = process_all(
            records,
            config,
            kind=ScheduleKind(kind),
            max_workers=workers,
            on_message=on_message,
        )

    if path:
        export_to_json(path, result.to_dict())
        click.echo(f"Results exported to {path}")
    print_batch_summary(result.summary, [r for r in result.results if not r.ok])


if __name__ == "__main__":
    cli()
