"""Tests for store utility functions."""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from simstore.core.errors import DimensionMismatchError, InvalidRecordError, StoreTimeoutError
from simstore.core.utils import Deadline, generate_record_id, run_with_deadline, validate_vector


class TestGenerateRecordId:
    """Test cases for record id generation."""

    def test_ids_are_uuid4(self) -> None:
        record_id = generate_record_id()
        assert uuid.UUID(record_id).version == 4
        assert generate_record_id() != record_id


class TestValidateVector:
    """Test cases for vector validation."""

    def test_accepts_numpy_and_ints(self) -> None:
        assert validate_vector(np.array([1, 2, 3], dtype=np.float32), 3) == [1.0, 2.0, 3.0]
        assert validate_vector([1, 2], 2) == [1.0, 2.0]

    def test_dimension_mismatch(self) -> None:
        with pytest.raises(DimensionMismatchError) as exc_info:
            validate_vector([1.0], 3, record_id="a")
        assert "record 'a'" in str(exc_info.value)

    def test_rejects_bad_components(self) -> None:
        with pytest.raises(InvalidRecordError):
            validate_vector([1.0, "2"], 2)
        with pytest.raises(InvalidRecordError):
            validate_vector([1.0, True], 2)
        with pytest.raises(InvalidRecordError):
            validate_vector([1.0, float("inf")], 2)
        with pytest.raises(InvalidRecordError):
            validate_vector(None, 2)


class TestRunWithDeadline:
    """Test cases for deadline-bound execution."""

    def test_without_timeout_runs_inline(self) -> None:
        assert run_with_deadline(None, lambda: 42, None, "count") == 42

    def test_timeout(self) -> None:
        with ThreadPoolExecutor(max_workers=1) as executor:
            with pytest.raises(StoreTimeoutError) as exc_info:
                run_with_deadline(executor, lambda: time.sleep(0.5), 0.05, "add", write=True)
        assert exc_info.value.operation == "add"
        assert exc_info.value.write is True

    def test_errors_propagate(self) -> None:
        def fail() -> None:
            raise ValueError("boom")

        with ThreadPoolExecutor(max_workers=1) as executor:
            with pytest.raises(ValueError, match="boom"):
                run_with_deadline(executor, fail, 1.0, "search")


class TestDeadline:
    """Test cases for operation-wide time budgets."""

    def test_unbounded(self) -> None:
        deadline = Deadline(None)
        assert deadline.remaining("search") is None

    def test_budget_shrinks(self) -> None:
        deadline = Deadline(1.0)
        first = deadline.remaining("add")
        time.sleep(0.05)
        second = deadline.remaining("add")
        assert first is not None and second is not None
        assert second < first <= 1.0

    def test_spent_budget(self) -> None:
        deadline = Deadline(0.01)
        time.sleep(0.05)
        with pytest.raises(StoreTimeoutError) as exc_info:
            deadline.remaining("add", write=True)
        assert exc_info.value.timeout == 0.01
        assert exc_info.value.write is True
