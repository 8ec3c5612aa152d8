"""Utility functions for store operations.

This module contains reusable helpers for record id generation, vector
validation and deadline-bound execution that don't depend on store state.
"""

from __future__ import annotations

import math
import time
import uuid
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeoutError
from numbers import Real
from typing import Any, Callable, Sequence, TypeVar

from simstore.core.errors import DimensionMismatchError, InvalidRecordError, StoreTimeoutError

T = TypeVar("T")


def generate_record_id() -> str:
    """Generate a random record id.

    Uses a version 4 UUID in canonical string form.

    Example:
        >>> len(generate_record_id())
        36
    """
    return str(uuid.uuid4())


def validate_vector(
    vector: Sequence[Any] | None,
    dimension: int,
    record_id: str | None = None,
) -> list[float]:
    """Check a vector against the store dimension and return it as floats.

    Args:
        vector: Candidate vector (any sequence of real numbers, numpy arrays included)
        dimension: Store dimension
        record_id: Record id, used in error messages

    Returns:
        The vector as a list of Python floats

    Raises:
        InvalidRecordError: If the vector is missing or holds non-finite or
            non-numeric values
        DimensionMismatchError: If the length differs from ``dimension``
    """
    if vector is None:
        raise InvalidRecordError(f"Record {record_id!r} has no vector")
    values = list(vector)
    if len(values) != dimension:
        raise DimensionMismatchError(dimension, len(values), record_id)
    result: list[float] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise InvalidRecordError(f"Vector components must be real numbers, got {value!r}")
        number = float(value)
        if not math.isfinite(number):
            raise InvalidRecordError(f"Vector components must be finite, got {number}")
        result.append(number)
    return result


class Deadline:
    """Time budget shared by every backend call of one store operation.

    Example:
        >>> Deadline(None).remaining("count") is None
        True
    """

    def __init__(self, timeout: float | None) -> None:
        self.timeout = timeout
        self._expires = None if timeout is None else time.monotonic() + timeout

    def remaining(self, operation: str, write: bool = False) -> float | None:
        """Seconds left, or None when unbounded.

        Raises:
            StoreTimeoutError: If the budget is already spent
        """
        if self._expires is None:
            return None
        left = self._expires - time.monotonic()
        if left <= 0:
            raise StoreTimeoutError(operation, self.timeout, write=write)  # type: ignore[arg-type]
        return left


def run_with_deadline(
    executor: Executor | None,
    fn: Callable[[], T],
    timeout: float | None,
    operation: str,
    write: bool = False,
) -> T:
    """Run ``fn`` and give up waiting after ``timeout`` seconds.

    Without a timeout (or an executor) ``fn`` runs on the calling thread.
    Otherwise it runs on ``executor``; on expiry the future is cancelled on a
    best-effort basis (a call already running keeps running) and
    StoreTimeoutError is raised.

    Example:
        >>> run_with_deadline(None, lambda: 42, None, "count")
        42
    """
    if timeout is None or executor is None:
        return fn()
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        raise StoreTimeoutError(operation, timeout, write=write) from exc
