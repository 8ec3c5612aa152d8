"""In-memory transport implementation.

Exact (brute-force) search for development and testing. The index
configuration is recorded but search is always exact.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable

import numpy as np

from simstore.core.distance import DistanceMetric
from simstore.core.errors import TransportError
from simstore.core.filters import MISSING, ComparisonOp, compare
from simstore.core.models import IndexSpec, NativeRow, VectorRecord
from simstore.core.storage.transport import Transport
from simstore.core.translator import FilterDialect, JsonPathKeyMapper, KeyMapper, WhereDialect


def pairwise_distances(matrix: np.ndarray, query: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    """Raw distances between each row of ``matrix`` and ``query``."""
    if metric is DistanceMetric.L2:
        return np.linalg.norm(matrix - query, axis=1)
    if metric is DistanceMetric.MANHATTAN:
        return np.abs(matrix - query).sum(axis=1)
    dots = matrix @ query
    if metric is DistanceMetric.INNER_PRODUCT:
        return dots
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    cosine = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
    return 1.0 - np.clip(cosine, -1.0, 1.0)


def _resolve(ref: str, record: VectorRecord) -> Any:
    parsed = JsonPathKeyMapper.parse(ref)
    if parsed is None:
        return record.metadata.get(ref, MISSING)
    column, key = parsed
    if column != "metadata":
        return MISSING
    return record.metadata.get(key, MISSING)


def match_where(where: dict[str, Any], record: VectorRecord) -> bool:
    """Evaluate a ``where`` document produced by WhereDialect."""
    for key, condition in where.items():
        if key == "$and":
            if not all(match_where(part, record) for part in condition):
                return False
        elif key == "$or":
            if not any(match_where(part, record) for part in condition):
                return False
        elif key == "$not":
            if match_where(condition, record):
                return False
        else:
            actual = _resolve(key, record)
            for op_name, expected in condition.items():
                if not compare(ComparisonOp(op_name), actual, expected):
                    return False
    return True


class MemoryTransport(Transport):
    """In-memory transport using a dict and numpy.

    Thread-safe: writes are applied under a lock, so a batch is visible to
    readers either entirely or not at all.

    Args:
        pushdown_ops: Restrict the comparison operators evaluated natively
            (None means all); the rest are evaluated by the store.
        supports_not: Whether NOT nodes may be pushed down.
        key_mapper: Key mapping for native predicates.
    """

    name = "memory"
    transactional_batches = True

    def __init__(
        self,
        pushdown_ops: Iterable[ComparisonOp] | None = None,
        supports_not: bool = True,
        key_mapper: KeyMapper | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, VectorRecord] = {}
        self._index: IndexSpec | None = None
        self._dialect = WhereDialect(
            ops=set(pushdown_ops) if pushdown_ops is not None else None,
            supports_not=supports_not,
        )
        self._key_mapper = key_mapper or JsonPathKeyMapper("metadata")
        self.last_query_options: list[str] = []

    @property
    def filter_dialect(self) -> FilterDialect:
        return self._dialect

    @property
    def default_key_mapper(self) -> KeyMapper:
        return self._key_mapper

    def describe_index(self) -> IndexSpec | None:
        with self._lock:
            return self._index

    def create_index(self, spec: IndexSpec) -> None:
        with self._lock:
            self._index = spec

    def _require_index(self) -> IndexSpec:
        if self._index is None:
            raise TransportError("index does not exist", backend=self.name, operation="query")
        return self._index

    def upsert(self, records: list[VectorRecord]) -> None:
        staged = {record.id: record.copy() for record in records}
        with self._lock:
            self._records.update(staged)  # type: ignore[arg-type]

    def query(
        self,
        vector: list[float],
        k: int,
        predicate: Any = None,
        options: list[str] | None = None,
        include_vectors: bool = False,
    ) -> list[NativeRow]:
        with self._lock:
            spec = self._require_index()
            self.last_query_options = list(options or [])
            candidates = list(self._records.values())

        if predicate:
            candidates = [record for record in candidates if match_where(predicate, record)]
        if not candidates:
            return []

        matrix = np.array([record.vector for record in candidates], dtype=np.float64)
        query = np.asarray(vector, dtype=np.float64)
        distances = pairwise_distances(matrix, query, spec.metric)
        keys = -distances if spec.metric is DistanceMetric.INNER_PRODUCT else distances
        order = np.argsort(keys, kind="stable")[:k]

        return [
            NativeRow(
                id=candidates[i].id,  # type: ignore[arg-type]
                text=candidates[i].text,
                metadata=dict(candidates[i].metadata),
                distance=float(distances[i]),
                vector=list(candidates[i].vector or []) if include_vectors else None,
            )
            for i in order
        ]

    def get(self, ids: list[str]) -> list[VectorRecord]:
        with self._lock:
            return [self._records[i].copy() for i in ids if i in self._records]

    def existing_ids(self, ids: list[str]) -> set[str]:
        with self._lock:
            return {i for i in ids if i in self._records}

    def delete(self, ids: list[str]) -> None:
        with self._lock:
            for record_id in ids:
                self._records.pop(record_id, None)

    def select(self, predicate: Any = None) -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            candidates = list(self._records.values())
        return [
            (record.id, dict(record.metadata))  # type: ignore[misc]
            for record in candidates
            if not predicate or match_where(predicate, record)
        ]

    def delete_where(self, predicate: Any) -> None:
        with self._lock:
            doomed = [
                record_id
                for record_id, record in self._records.items()
                if not predicate or match_where(predicate, record)
            ]
            for record_id in doomed:
                del self._records[record_id]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def close(self) -> None:
        pass
