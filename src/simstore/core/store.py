"""Similarity store: the backend-independent façade over a transport.

The store validates input, compiles filters for the transport's dialect,
derives per-query index options, and normalizes native distances into a
similarity score in [0, 1] (inner product excepted, see DistanceStrategy).
The lifecycle state lock is never held across transport I/O; index setup
is serialized by a lock of its own. A deadline bounds a whole operation,
shared by every transport call it makes.

Search pipeline:
    1. Validate the query vector against the store dimension
    2. Split the filter into a native predicate and an in-process fallback
    3. Over-fetch when a fallback is present
    4. Run the native ANN query with the index query options
    5. Apply the fallback, normalize, sort, threshold, truncate to k
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, TypeVar

from simstore.core.distance import DistanceMetric, DistanceStrategy, resolve_metric, strategy_for
from simstore.core.errors import (
    BatchAddError,
    BatchOutcome,
    ClosedStoreError,
    ConfigurationError,
    DimensionMismatchError,
    InvalidFilterError,
    InvalidRecordError,
    SimStoreError,
    StoreTimeoutError,
    TransportError,
)
from simstore.core.filters import FilterExpr, evaluate, filter_from_dict
from simstore.core.index import HNSWIndex, IndexConfig, IVFFlatIndex, IVFIndex, parse_options
from simstore.core.models import IndexSpec, Query, ScoredResult, VectorRecord
from simstore.core.storage.transport import Transport
from simstore.core.translator import FilterTranslator, KeyMapper
from simstore.core.utils import Deadline, generate_record_id, run_with_deadline, validate_vector

if TYPE_CHECKING:
    from simstore.core.config import StoreConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


def _require_positive(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


class SimilarityStore:
    """Vector similarity store over a native transport.

    Args:
        transport: Native backend
        dimension: Length of every stored vector
        metric: Distance metric (unknown names fall back to L2 with a warning)
        index: ANN index configuration (defaults to HNSWIndex())
        key_mapper: Metadata key mapping (defaults to the transport's)
        fallback_multiplier: Over-fetch factor when part of a filter runs in-process
        max_fallback_fetch: Upper bound on the over-fetched candidate count
        id_retry_attempts: Attempts at generating a non-colliding id
        default_timeout: Deadline in seconds for calls that pass none
        max_workers: Threads used for deadline-bound calls
        include_vectors: Return stored vectors on search results
        expected_row_count: Row estimate used to size IVF lists when not set

    Example:
        >>> store = create(3, "cosine")
        >>> store.add(VectorRecord(id="a", vector=[1.0, 0.0, 0.0]))
        'a'
        >>> [r.id for r in store.search_vector([1.0, 0.0, 0.0], k=1)]
        ['a']
    """

    def __init__(
        self,
        transport: Transport,
        dimension: int,
        metric: DistanceMetric | str | None = DistanceMetric.COSINE,
        index: IndexConfig | None = None,
        key_mapper: KeyMapper | None = None,
        fallback_multiplier: int = 4,
        max_fallback_fetch: int = 1000,
        id_retry_attempts: int = 3,
        default_timeout: float | None = None,
        max_workers: int = 4,
        include_vectors: bool = False,
        expected_row_count: int | None = None,
    ) -> None:
        _require_positive("dimension", dimension)
        _require_positive("fallback_multiplier", fallback_multiplier)
        _require_positive("max_fallback_fetch", max_fallback_fetch)
        _require_positive("id_retry_attempts", id_retry_attempts)
        _require_positive("max_workers", max_workers)
        if default_timeout is not None and default_timeout <= 0:
            raise ConfigurationError(f"default_timeout must be positive, got {default_timeout}")

        self._transport = transport
        self._dimension = dimension
        self._metric = resolve_metric(metric)
        self._strategy = strategy_for(self._metric)
        self._index: IndexConfig = index if index is not None else HNSWIndex()

        if self._metric not in transport.supported_metrics:
            raise ConfigurationError(
                f"Transport {transport.name!r} does not support the {self._metric.value} metric"
            )
        if self._index.family not in transport.supported_families:
            raise ConfigurationError(
                f"Transport {transport.name!r} does not support {self._index.family.value} indexes"
            )

        self._key_mapper = key_mapper if key_mapper is not None else transport.default_key_mapper
        self._key_mapper.validate()
        self._translator = FilterTranslator(transport.filter_dialect, self._key_mapper)

        self._fallback_multiplier = fallback_multiplier
        self._max_fallback_fetch = max_fallback_fetch
        self._id_retry_attempts = id_retry_attempts
        self._default_timeout = default_timeout
        self._max_workers = max_workers
        self._include_vectors = include_vectors
        self._expected_row_count = expected_row_count

        self._lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._executor_lock = threading.Lock()
        self._state = StoreState.UNINITIALIZED
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_config(
        cls, config: "StoreConfig", transport: Transport | None = None
    ) -> "SimilarityStore":
        """Create a store from configuration.

        The transport is built from ``config.transport`` unless one is given.
        """
        if transport is None:
            from simstore.core.storage.config import create_transport

            transport = create_transport(config.transport)

        return cls(
            transport,
            dimension=config.dimension,
            metric=config.metric,
            index=config.index.to_index_config(),
            fallback_multiplier=config.fallback_multiplier,
            max_fallback_fetch=config.max_fallback_fetch,
            id_retry_attempts=config.id_retry_attempts,
            default_timeout=config.default_timeout,
            max_workers=config.max_workers,
            include_vectors=config.include_vectors,
            expected_row_count=config.expected_row_count,
        )

    # -- properties ---------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def metric(self) -> DistanceMetric:
        return self._metric

    @property
    def strategy(self) -> DistanceStrategy:
        return self._strategy

    @property
    def index(self) -> IndexConfig:
        return self._index

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def translator(self) -> FilterTranslator:
        return self._translator

    # -- lifecycle ------------------------------------------------------------

    def initialize(self, timeout: float | None = None) -> None:
        """Create the index, or validate an existing one. Idempotent."""
        self._initialize(self._deadline(timeout))

    def _initialize(self, deadline: Deadline) -> None:
        # _lock guards state only; index I/O runs under _init_lock
        remaining = deadline.remaining("initialize", write=True)
        if not self._init_lock.acquire(timeout=-1 if remaining is None else remaining):
            raise StoreTimeoutError("initialize", deadline.timeout, write=True)  # type: ignore[arg-type]
        try:
            with self._lock:
                if self._state is StoreState.CLOSED:
                    raise ClosedStoreError("Store is closed")
                if self._state is StoreState.READY:
                    return
            self._call("initialize", self._initialize_index, deadline, write=True)
            with self._lock:
                if self._state is StoreState.CLOSED:
                    raise ClosedStoreError("Store was closed during initialization")
                self._state = StoreState.READY
        finally:
            self._init_lock.release()

    def _initialize_index(self) -> None:
        existing = self._transport.describe_index()
        if existing is not None:
            self._check_existing(existing)
            self._index = self._with_lists(existing.build_options)
            logger.debug("Using existing %s index on %s", existing.family.value, self._transport.name)
            return

        build_options = self._index.build_options(self._expected_row_count)
        spec = IndexSpec(
            dimension=self._dimension,
            metric=self._metric,
            family=self._index.family,
            build_options=tuple(build_options),
        )
        logger.debug("Creating %s index on %s: %s", spec.family.value, self._transport.name, build_options)
        self._transport.create_index(spec)
        self._index = self._with_lists(spec.build_options)

    def _check_existing(self, existing: IndexSpec) -> None:
        if existing.dimension is not None and existing.dimension != self._dimension:
            raise ConfigurationError(
                f"Existing index has dimension {existing.dimension}, store expects {self._dimension}"
            )
        if existing.metric is not self._metric:
            raise ConfigurationError(
                f"Existing index uses the {existing.metric.value} metric, "
                f"store expects {self._metric.value}"
            )
        if existing.family is not self._index.family:
            raise ConfigurationError(
                f"Existing index is {existing.family.value}, store expects {self._index.family.value}"
            )

    def _with_lists(self, build_options: Iterable[str]) -> IndexConfig:
        """Pin IVF list counts to what the index was built with."""
        if not isinstance(self._index, (IVFFlatIndex, IVFIndex)) or self._index.lists is not None:
            return self._index
        lists = parse_options(tuple(build_options)).get("lists")
        if lists is None:
            return self._index
        return dataclasses.replace(self._index, lists=int(lists))

    def close(self) -> None:
        """Release the transport. Every later operation raises ClosedStoreError."""
        with self._lock:
            if self._state is StoreState.CLOSED:
                return
            self._state = StoreState.CLOSED
        with self._executor_lock:
            executor, self._executor = self._executor, None
        try:
            self._transport.close()
        finally:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "SimilarityStore":
        self.initialize()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _deadline(self, timeout: float | None) -> Deadline:
        return Deadline(timeout if timeout is not None else self._default_timeout)

    def _ensure_ready(self, deadline: Deadline) -> None:
        state = self._state
        if state is StoreState.CLOSED:
            raise ClosedStoreError("Store is closed")
        if state is StoreState.UNINITIALIZED:
            self._initialize(deadline)

    def _executor_for(self, timeout: float | None) -> ThreadPoolExecutor | None:
        if timeout is None:
            return None
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="simstore"
                )
            return self._executor

    def _call(
        self,
        operation: str,
        fn: Callable[[], T],
        deadline: Deadline,
        write: bool = False,
    ) -> T:
        """Run a transport call within what is left of the deadline, wrapping foreign errors."""
        remaining = deadline.remaining(operation, write)
        try:
            return run_with_deadline(self._executor_for(remaining), fn, remaining, operation, write)
        except SimStoreError:
            raise
        except Exception as exc:
            raise TransportError(
                str(exc), backend=self._transport.name, operation=operation
            ) from exc

    # -- writes ---------------------------------------------------------------

    def _prepare(self, record: VectorRecord) -> VectorRecord:
        if record.id is not None and (not isinstance(record.id, str) or not record.id):
            raise InvalidRecordError(f"Record id must be a non-empty string, got {record.id!r}")
        if not isinstance(record.text, str):
            raise InvalidRecordError(f"Record text must be a string, got {type(record.text).__name__}")
        vector = validate_vector(record.vector, self._dimension, record.id)
        record.validate_metadata()
        return VectorRecord(
            id=record.id,
            vector=vector,
            text=record.text,
            metadata=dict(record.metadata),
        )

    def _assign_ids(self, count: int, deadline: Deadline) -> list[str]:
        ids = [generate_record_id() for _ in range(count)]
        for _ in range(self._id_retry_attempts):
            candidates = list(ids)
            taken = self._call(
                "existing_ids", lambda: self._transport.existing_ids(candidates), deadline
            )
            if not taken and len(set(ids)) == len(ids):
                return ids
            seen: set[str] = set()
            for i, record_id in enumerate(ids):
                if record_id in taken or record_id in seen:
                    ids[i] = generate_record_id()
                seen.add(ids[i])
            logger.debug("Regenerated colliding record ids")
        raise SimStoreError(
            f"Could not generate unique record ids after {self._id_retry_attempts} attempts"
        )

    def add(self, record: VectorRecord, timeout: float | None = None) -> str:
        """Store a record and return its id.

        An id is generated when the record has none. A record with an
        existing id replaces the stored one entirely. ``timeout`` bounds the
        whole operation, id generation included.
        """
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        prepared = self._prepare(record)
        if prepared.id is None:
            prepared.id = self._assign_ids(1, deadline)[0]
        self._call("add", lambda: self._transport.upsert([prepared]), deadline, write=True)
        return prepared.id

    def add_all(self, records: Iterable[VectorRecord], timeout: float | None = None) -> list[str]:
        """Store a batch of records and return their ids in input order.

        Raises:
            BatchAddError: When any record is invalid. On transactional
                transports nothing is written (ROLLED_BACK); otherwise the
                valid records are written and their ids reported (PARTIAL).
                A native failure part-way through a non-transactional write
                is reported as INDETERMINATE.
        """
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        records = list(records)
        if not records:
            return []

        prepared: dict[int, VectorRecord] = {}
        failures: dict[int, Exception] = {}
        for i, record in enumerate(records):
            try:
                prepared[i] = self._prepare(record)
            except (InvalidRecordError, DimensionMismatchError) as exc:
                failures[i] = exc

        transactional = self._transport.transactional_batches
        if failures and transactional:
            raise BatchAddError(failures, BatchOutcome.ROLLED_BACK)

        unassigned = [i for i, record in prepared.items() if record.id is None]
        if unassigned:
            for i, record_id in zip(unassigned, self._assign_ids(len(unassigned), deadline)):
                prepared[i].id = record_id

        batch = [prepared[i] for i in sorted(prepared)]
        ids = [record.id for record in batch]
        if batch:
            try:
                self._call("add_all", lambda: self._transport.upsert(batch), deadline, write=True)
            except TransportError as exc:
                if transactional:
                    raise
                raise BatchAddError(
                    {i: exc for i in sorted(prepared)}, BatchOutcome.INDETERMINATE
                ) from exc

        if failures:
            raise BatchAddError(failures, BatchOutcome.PARTIAL, ids=ids)  # type: ignore[arg-type]
        return ids  # type: ignore[return-value]

    def upsert(self, record: VectorRecord, timeout: float | None = None) -> str:
        """Replace the record stored under ``record.id`` (inserting if absent)."""
        if record.id is None:
            raise InvalidRecordError("upsert requires a record id")
        return self.add(record, timeout=timeout)

    def remove(self, record_id: str, timeout: float | None = None) -> None:
        """Delete a record. Removing a missing id is a no-op."""
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        self._call("remove", lambda: self._transport.delete([record_id]), deadline, write=True)

    def remove_all(self, ids: Iterable[str] | None = None, timeout: float | None = None) -> None:
        """Delete the given ids, or every record when ``ids`` is None."""
        if ids is None:
            self.clear(timeout=timeout)
            return
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        ids = list(ids)
        if not ids:
            return
        self._call("remove_all", lambda: self._transport.delete(ids), deadline, write=True)

    def remove_by_filter(
        self,
        filter: FilterExpr | Mapping[str, Any],
        timeout: float | None = None,
    ) -> None:
        """Delete every record whose metadata matches ``filter``.

        A filter the backend can evaluate completely is deleted natively.
        Otherwise the records matching the native part are listed and the
        rest of the filter is checked in-process before deleting by id;
        records written concurrently may be missed.
        """
        if filter is None:
            raise InvalidFilterError("remove_by_filter requires a filter")
        if isinstance(filter, Mapping):
            filter = filter_from_dict(filter)
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        translated = self._translator.translate(filter)

        if not translated.needs_fallback:
            native = translated.native
            self._call(
                "remove_by_filter",
                lambda: self._transport.delete_where(native),
                deadline,
                write=True,
            )
            return

        rows = self._call(
            "remove_by_filter", lambda: self._transport.select(translated.native), deadline
        )
        ids = [
            record_id
            for record_id, metadata in rows
            if evaluate(translated.fallback, metadata)  # type: ignore[arg-type]
        ]
        logger.debug("Removing %d of %d listed records after in-process filtering", len(ids), len(rows))
        if ids:
            self._call(
                "remove_by_filter", lambda: self._transport.delete(ids), deadline, write=True
            )

    def clear(self, timeout: float | None = None) -> None:
        """Delete every record, keeping the index."""
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        self._call("clear", self._transport.clear, deadline, write=True)

    # -- reads ------------------------------------------------------------------

    def get(self, record_id: str, timeout: float | None = None) -> VectorRecord | None:
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        records = self._call("get", lambda: self._transport.get([record_id]), deadline)
        return records[0].copy() if records else None

    def count(self, timeout: float | None = None) -> int:
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        return self._call("count", self._transport.count, deadline)

    def _fetch_k(self, k: int) -> int:
        cap = min(self._max_fallback_fetch, self._transport.max_fetch)
        return max(k, min(k * self._fallback_multiplier, cap))

    def search(self, query: Query, timeout: float | None = None) -> list[ScoredResult]:
        """Return up to ``query.k`` results, best first.

        Scores are non-increasing in return order. Fewer than k results are
        returned when the store holds fewer matching records, or when the
        in-process part of the filter rejects over-fetched candidates.
        """
        deadline = self._deadline(timeout)
        self._ensure_ready(deadline)
        vector = validate_vector(query.vector, self._dimension)
        translated = self._translator.translate(query.filter)

        fetch_k = query.k
        if translated.needs_fallback:
            fetch_k = self._fetch_k(query.k)
            logger.debug("Over-fetching %d candidates for in-process filtering", fetch_k)
        options = self._index.query_options(fetch_k, self._expected_row_count)
        include_vectors = self._include_vectors

        rows = self._call(
            "search",
            lambda: self._transport.query(
                vector,
                fetch_k,
                predicate=translated.native,
                options=options,
                include_vectors=include_vectors,
            ),
            deadline,
        )

        if translated.fallback is not None:
            rows = [row for row in rows if evaluate(translated.fallback, row.metadata)]

        results = [
            ScoredResult(
                record=VectorRecord(
                    id=row.id,
                    vector=list(row.vector) if include_vectors and row.vector is not None else None,
                    text=row.text,
                    metadata=dict(row.metadata),
                ),
                score=self._strategy.to_similarity(row.distance),
                distance=row.distance,
            )
            for row in rows
        ]
        results.sort(key=lambda result: result.score, reverse=True)
        if query.min_score is not None:
            results = [result for result in results if result.score >= query.min_score]
        return results[: query.k]

    def search_vector(
        self,
        vector: list[float],
        k: int = 5,
        filter: FilterExpr | Mapping[str, Any] | None = None,
        min_score: float | None = None,
        timeout: float | None = None,
    ) -> list[ScoredResult]:
        """Convenience wrapper around ``search``; ``filter`` may be a dict."""
        if isinstance(filter, Mapping):
            filter = filter_from_dict(filter)
        return self.search(Query(vector=vector, k=k, filter=filter, min_score=min_score), timeout)


def create(
    dimension: int,
    metric: DistanceMetric | str | None = DistanceMetric.COSINE,
    index: IndexConfig | None = None,
    transport: Transport | None = None,
    **options: Any,
) -> SimilarityStore:
    """Build and initialize a store.

    Uses an in-memory transport when none is given. Extra keyword options
    are passed to SimilarityStore.
    """
    if transport is None:
        from simstore.core.storage.memory import MemoryTransport

        transport = MemoryTransport()
    store = SimilarityStore(transport, dimension, metric=metric, index=index, **options)
    store.initialize()
    return store
