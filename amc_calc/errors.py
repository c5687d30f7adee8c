"""Exceptions raised by the schedule calculator.

Invalid input aborts only the record being processed: the batch layer catches
:class:`AmcCalcError` per record and turns it into an error result.
"""

from __future__ import annotations

from typing import Optional


class AmcCalcError(Exception):
    """Base class for all calculator errors."""


class InvalidInput(AmcCalcError, ValueError):
    """A record or configuration value cannot be used for a calculation.

    Attributes
    ----------
    field: str
        Name of the offending input field (``"total_value"``, ``"rates"``,
        ``"uat_date"`` ...).
    """

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message or f"Invalid value for {field}")


class LogicInvariantViolation(AmcCalcError, RuntimeError):
    """An internal invariant of the allocation engine does not hold."""
