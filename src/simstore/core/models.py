"""Data models for records, queries and search results."""

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from simstore.core.errors import InvalidRecordError

if TYPE_CHECKING:
    from simstore.core.distance import DistanceMetric
    from simstore.core.filters import FilterExpr
    from simstore.core.index import IndexFamily

Scalar = Union[str, int, float, bool]
Metadata = dict[str, Scalar]


def is_scalar(value: Any) -> bool:
    """Whether a value is an allowed metadata scalar."""
    return isinstance(value, (str, int, float, bool))


@dataclass
class VectorRecord:
    """A stored vector with its text and metadata.

    Attributes:
        id: Unique identifier within a store (assigned on add when None)
        vector: Fixed-length embedding, same dimension as the store
        text: Text the vector was produced from
        metadata: Flat mapping of scalar values, filterable at search time
    """

    id: str | None
    vector: list[float] | None
    text: str = ""
    metadata: Metadata = field(default_factory=dict)

    def validate_metadata(self) -> None:
        """Reject non-string keys and non-scalar values."""
        for key, value in self.metadata.items():
            if not isinstance(key, str):
                raise InvalidRecordError(f"Metadata keys must be strings, got {key!r}")
            if not is_scalar(value):
                raise InvalidRecordError(
                    f"Metadata value for {key!r} must be str, int, float or bool, "
                    f"got {type(value).__name__}"
                )

    def copy(self, include_vector: bool = True) -> "VectorRecord":
        """Return a detached copy, optionally without the vector."""
        return VectorRecord(
            id=self.id,
            vector=list(self.vector) if include_vector and self.vector is not None else None,
            text=self.text,
            metadata=copy.deepcopy(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize record to dict."""
        return {
            "id": self.id,
            "vector": self.vector,
            "text": self.text,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VectorRecord":
        """Deserialize record from dict."""
        return cls(
            id=data.get("id"),
            vector=data.get("vector"),
            text=data.get("text") or "",
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Query:
    """A top-k similarity query.

    ``min_score`` is compared against normalized similarity, never against
    the raw native distance.
    """

    vector: list[float]
    k: int = 5
    filter: "FilterExpr | None" = None
    min_score: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.k, bool) or not isinstance(self.k, int) or self.k <= 0:
            raise ValueError(f"k must be a positive integer, got {self.k!r}")
        if self.min_score is not None and not 0.0 <= self.min_score <= 1.0:
            raise ValueError(f"min_score must be in [0, 1], got {self.min_score}")


@dataclass
class ScoredResult:
    """A search hit with its normalized similarity score."""

    record: VectorRecord
    score: float
    distance: float

    @property
    def id(self) -> str | None:
        return self.record.id

    def to_dict(self) -> dict[str, Any]:
        """Serialize result to dict."""
        return {
            "record": self.record.to_dict(),
            "score": self.score,
            "distance": self.distance,
        }


@dataclass
class NativeRow:
    """A raw hit as returned by a transport, before normalization."""

    id: str
    text: str
    metadata: Metadata
    distance: float
    vector: list[float] | None = None


@dataclass(frozen=True)
class IndexSpec:
    """Everything a transport needs to build an index, or reports about one.

    ``dimension`` is None when an existing index cannot tell.
    """

    dimension: int | None
    metric: "DistanceMetric"
    family: "IndexFamily"
    build_options: tuple[str, ...] = ()
