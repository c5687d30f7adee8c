import os
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

# The web app opens its run store at import time.
_DB_DIR = Path(tempfile.mkdtemp(prefix="amc-calc-tests-"))
os.environ.setdefault("SCHEDULE_RUNS_DATABASE_URL", f"sqlite:///{_DB_DIR / 'runs.sqlite3'}")

from amc_calc.data_models import ContractInput, ProductRecord  # noqa: E402

ROI_RATES = (Decimal("0.20"), Decimal("0.225"), Decimal("0.275"), Decimal("0.30"))


@pytest.fixture
def roi_rates():
    return ROI_RATES


@pytest.fixture
def aligned_contract():
    """Contract starting exactly on a quarter boundary."""
    return ContractInput(
        contract_start=date(2024, 1, 5),
        total_value=Decimal("100000"),
        rates=ROI_RATES,
        tax_rate=Decimal("0.18"),
    )


@pytest.fixture
def mid_quarter_contract():
    """Contract starting in the middle of the JFM quarter."""
    return ContractInput(
        contract_start=date(2024, 3, 15),
        total_value=Decimal("100000"),
        rates=ROI_RATES,
        tax_rate=Decimal("0.18"),
    )


@pytest.fixture
def xray_record():
    """Product whose AMC (40 % of 250000, UAT + 3 years) matches ``mid_quarter_contract``."""
    return ProductRecord(
        record_id="P-001",
        product_name="X-Ray Unit",
        invoice_value=Decimal("250000"),
        uat_date=date(2021, 3, 15),
        location="Ward 3",
    )
