"""Exceptions raised by the reconciliation services.

The pure calculators (rollover, deviation) never raise; everything that
touches the store raises one of these so callers can map them to a response.
"""

from typing import List, Tuple


class ReconciliationError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReconciliationError):
    """Input rejected before any computation (bad date, capacity, value)."""


class NotFoundError(ReconciliationError):
    """Unknown pump, calculation or reading, or no active pumps."""


class BusinessRuleViolation(ReconciliationError):
    """Well-formed request that breaks a domain rule."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConflictError(ReconciliationError):
    """A uniqueness constraint rejected the write."""


class PartialBatchFailure(ReconciliationError):
    """One or more pumps failed during a station-wide run."""

    def __init__(self, failures: List[Tuple[int, Exception]]):
        self.failures = failures
        pumps = ", ".join(str(pump_id) for pump_id, _ in failures)
        super().__init__(f"{len(failures)} pump(s) failed: {pumps}")
