"""Error taxonomy for the similarity store."""

from __future__ import annotations

from enum import Enum
from typing import Any


class SimStoreError(Exception):
    """Base class for all similarity store errors."""


class ConfigurationError(SimStoreError, ValueError):
    """Invalid or conflicting store configuration. Never retried."""


class DimensionMismatchError(SimStoreError, ValueError):
    """A vector's length does not match the store dimension."""

    def __init__(self, expected: int, actual: int, record_id: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        self.record_id = record_id
        where = f" for record {record_id!r}" if record_id else ""
        super().__init__(f"Expected vector of dimension {expected}, got {actual}{where}")


class InvalidRecordError(SimStoreError, ValueError):
    """A record is malformed (missing id, non-scalar metadata, ...)."""


class InvalidFilterError(SimStoreError, ValueError):
    """A filter expression is malformed."""


class BatchOutcome(str, Enum):
    """What a failed batch left behind on the backend."""

    ROLLED_BACK = "rolled_back"
    PARTIAL = "partial"
    INDETERMINATE = "indeterminate"


class BatchAddError(SimStoreError):
    """One or more records of a batch could not be written.

    Attributes:
        failures: Batch index -> error for every record that failed
        outcome: State of the backend after the failure
        ids: Ids that were written (only meaningful for PARTIAL)
    """

    def __init__(
        self,
        failures: dict[int, Exception],
        outcome: BatchOutcome,
        ids: list[str] | None = None,
    ) -> None:
        self.failures = failures
        self.outcome = outcome
        self.ids = ids or []
        indices = ", ".join(str(i) for i in sorted(failures))
        super().__init__(
            f"Batch add failed for indices [{indices}] (outcome: {outcome.value})"
        )


class TransportError(SimStoreError):
    """A native backend call failed. Surfaced verbatim, never retried here."""

    def __init__(self, message: str, *, backend: str, operation: str, details: Any = None) -> None:
        self.backend = backend
        self.operation = operation
        self.details = details
        super().__init__(f"[{backend}] {operation} failed: {message}")


class StoreTimeoutError(SimStoreError, TimeoutError):
    """An operation exceeded its deadline.

    When ``write`` is True the effect on the backend is unknown and must be
    treated as possibly applied.
    """

    def __init__(self, operation: str, timeout: float, write: bool = False) -> None:
        self.operation = operation
        self.timeout = timeout
        self.write = write
        suffix = "; write state is indeterminate" if write else ""
        super().__init__(f"{operation} timed out after {timeout}s{suffix}")


class ClosedStoreError(SimStoreError):
    """Raised for any operation on a closed store."""
