"""Transport interface: the native backend behind a similarity store."""

from abc import ABC, abstractmethod
from typing import Any

from simstore.core.distance import DistanceMetric
from simstore.core.index import IndexFamily
from simstore.core.models import IndexSpec, NativeRow, VectorRecord
from simstore.core.translator import FilterDialect, KeyMapper


class Transport(ABC):
    """Abstract interface for native vector backends.

    A transport executes index creation, writes and ANN queries, and returns
    raw distances in the metric it was created with:

        L2             true Euclidean distance (not squared)
        cosine         cosine distance, 1 - cos, in [0, 2]
        inner product  the raw dot product (larger is closer)
        Manhattan      L1 distance

    Option tokens and native predicates are produced by the store and must be
    accepted verbatim.
    """

    name: str = "transport"
    supported_metrics: frozenset[DistanceMetric] = frozenset(DistanceMetric)
    supported_families: frozenset[IndexFamily] = frozenset(IndexFamily)
    transactional_batches: bool = False
    max_fetch: int = 10_000

    @property
    @abstractmethod
    def filter_dialect(self) -> FilterDialect:
        """Native predicate language."""
        ...

    @property
    @abstractmethod
    def default_key_mapper(self) -> KeyMapper:
        """Key mapping used when the store is not given one."""
        ...

    @abstractmethod
    def describe_index(self) -> IndexSpec | None:
        """Return the existing index, or None if it does not exist yet."""
        ...

    @abstractmethod
    def create_index(self, spec: IndexSpec) -> None:
        """Create the index and its backing collection."""
        ...

    @abstractmethod
    def upsert(self, records: list[VectorRecord]) -> None:
        """Write full records, replacing any with the same id.

        Transactional transports apply all or none of the batch.
        """
        ...

    @abstractmethod
    def query(
        self,
        vector: list[float],
        k: int,
        predicate: Any = None,
        options: list[str] | None = None,
        include_vectors: bool = False,
    ) -> list[NativeRow]:
        """Return up to k nearest rows, closest first."""
        ...

    @abstractmethod
    def get(self, ids: list[str]) -> list[VectorRecord]:
        """Fetch stored records by id; missing ids are skipped."""
        ...

    @abstractmethod
    def existing_ids(self, ids: list[str]) -> set[str]:
        """Return the subset of ids that are stored."""
        ...

    @abstractmethod
    def delete(self, ids: list[str]) -> None:
        """Delete records by id; missing ids are ignored."""
        ...

    @abstractmethod
    def select(self, predicate: Any = None) -> list[tuple[str, dict[str, Any]]]:
        """Return (id, metadata) for every record matching the native predicate."""
        ...

    @abstractmethod
    def delete_where(self, predicate: Any) -> None:
        """Delete every record matching the native predicate."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Remove all records, keeping the index."""
        ...

    @abstractmethod
    def count(self) -> int:
        """Number of stored records."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release native resources."""
        ...
