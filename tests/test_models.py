"""Tests for record, query and result models."""

import pytest

from simstore.core.errors import InvalidRecordError
from simstore.core.models import Query, ScoredResult, VectorRecord


class TestVectorRecord:
    """Test cases for VectorRecord."""

    def test_create_record(self) -> None:
        record = VectorRecord(id="doc1", vector=[0.1, 0.2, 0.3])
        assert record.id == "doc1"
        assert record.text == ""
        assert record.metadata == {}

    def test_validate_metadata_accepts_scalars(self) -> None:
        record = VectorRecord(
            id="doc1",
            vector=[0.1],
            metadata={"color": "red", "year": 2021, "rating": 4.5, "active": True},
        )
        record.validate_metadata()

    def test_validate_metadata_rejects_nested_values(self) -> None:
        """Lists, dicts and None are not metadata scalars."""
        for value in ([1, 2], {"a": 1}, None):
            record = VectorRecord(id="doc1", vector=[0.1], metadata={"key": value})
            with pytest.raises(InvalidRecordError):
                record.validate_metadata()

    def test_validate_metadata_rejects_non_string_keys(self) -> None:
        record = VectorRecord(id="doc1", vector=[0.1], metadata={1: "x"})  # type: ignore[dict-item]
        with pytest.raises(InvalidRecordError):
            record.validate_metadata()

    def test_copy_is_detached(self) -> None:
        """Mutating a copy leaves the original untouched."""
        record = VectorRecord(id="doc1", vector=[1.0, 2.0], metadata={"color": "red"})
        clone = record.copy()
        clone.vector[0] = 9.0  # type: ignore[index]
        clone.metadata["color"] = "blue"
        assert record.vector == [1.0, 2.0]
        assert record.metadata == {"color": "red"}

    def test_copy_without_vector(self) -> None:
        record = VectorRecord(id="doc1", vector=[1.0, 2.0])
        assert record.copy(include_vector=False).vector is None

    def test_from_dict_defaults(self) -> None:
        """Missing text and metadata fall back to empty values."""
        record = VectorRecord.from_dict({"id": "doc1", "vector": [0.5]})
        assert record.text == ""
        assert record.metadata == {}
        assert record.to_dict()["vector"] == [0.5]


class TestQuery:
    """Test cases for Query."""

    def test_defaults(self) -> None:
        query = Query(vector=[0.1, 0.2])
        assert query.k == 5
        assert query.filter is None
        assert query.min_score is None

    def test_k_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            Query(vector=[0.1], k=0)
        with pytest.raises(ValueError):
            Query(vector=[0.1], k=-3)
        with pytest.raises(ValueError):
            Query(vector=[0.1], k=True)

    def test_min_score_range(self) -> None:
        Query(vector=[0.1], min_score=0.0)
        Query(vector=[0.1], min_score=1.0)
        with pytest.raises(ValueError):
            Query(vector=[0.1], min_score=1.5)
        with pytest.raises(ValueError):
            Query(vector=[0.1], min_score=-0.1)


class TestScoredResult:
    """Test cases for ScoredResult."""

    def test_result_to_dict(self) -> None:
        record = VectorRecord(id="doc1", vector=None, text="hello", metadata={"a": 1})
        result = ScoredResult(record=record, score=0.9, distance=0.2)
        data = result.to_dict()

        assert result.id == "doc1"
        assert data["score"] == 0.9
        assert data["distance"] == 0.2
        assert data["record"]["text"] == "hello"
