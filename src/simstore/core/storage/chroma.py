"""ChromaDB transport implementation."""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from typing import Any, Iterator

import chromadb
from chromadb.api import ClientAPI
from chromadb.config import Settings

from simstore.core.config import get_chroma_config
from simstore.core.distance import DistanceMetric, resolve_metric
from simstore.core.errors import ConfigurationError, TransportError
from simstore.core.filters import ComparisonOp
from simstore.core.index import IndexFamily, parse_options
from simstore.core.models import IndexSpec, NativeRow, VectorRecord
from simstore.core.storage.transport import Transport
from simstore.core.translator import FilterDialect, FlatKeyMapper, KeyMapper, WhereDialect

logger = logging.getLogger(__name__)

_SPACES = {
    DistanceMetric.L2: "l2",
    DistanceMetric.COSINE: "cosine",
    DistanceMetric.INNER_PRODUCT: "ip",
}
_METRICS = {space: metric for metric, space in _SPACES.items()}

# Chroma's $ne / $nin skip records that lack the key, and it has no $not.
_PUSHDOWN_OPS = frozenset(
    {
        ComparisonOp.EQ,
        ComparisonOp.GT,
        ComparisonOp.GTE,
        ComparisonOp.LT,
        ComparisonOp.LTE,
        ComparisonOp.IN,
    }
)


class ChromaWhereDialect(WhereDialect):
    """Chroma only accepts $in lists holding a single value type."""

    def supports(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> bool:
        if not super().supports(ref, op, values):
            return False
        return len({type(v) for v in values}) == 1


class ChromaTransport(Transport):
    """ChromaDB collection used as an HNSW index.

    The store dimension and metric are kept in the collection metadata so an
    existing collection can be validated on startup.
    """

    name = "chroma"
    supported_metrics = frozenset(_SPACES)
    supported_families = frozenset({IndexFamily.HNSW})
    transactional_batches = False

    def __init__(
        self,
        collection_name: str = "simstore",
        host: str | None = None,
        port: int | None = None,
        path: str | None = None,
        mode: str = "ephemeral",
        client: ClientAPI | None = None,
    ) -> None:
        self._collection_name = collection_name
        self._host = host
        self._port = port
        self._path = path
        self._mode = mode
        self._client: ClientAPI | None = client
        self._collection: chromadb.Collection | None = None
        self._dialect = ChromaWhereDialect(ops=_PUSHDOWN_OPS, supports_not=False)
        self._key_mapper = FlatKeyMapper()
        self._warned_ef_search = False

    @property
    def filter_dialect(self) -> FilterDialect:
        return self._dialect

    @property
    def default_key_mapper(self) -> KeyMapper:
        return self._key_mapper

    @contextmanager
    def _native(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (TransportError, ConfigurationError):
            raise
        except Exception as exc:
            raise TransportError(str(exc), backend=self.name, operation=operation) from exc

    def get_client(self) -> ClientAPI:
        if self._client is not None:
            return self._client

        settings = Settings(anonymized_telemetry=False)

        if self._mode == "client" and self._host:
            self._client = chromadb.HttpClient(
                host=self._host,
                port=self._port or 8000,
                settings=settings,
            )
        elif self._mode == "persistent" and self._path:
            self._client = chromadb.PersistentClient(path=self._path, settings=settings)
        else:
            self._client = chromadb.Client(settings=settings)
        return self._client

    def get_collection(self) -> chromadb.Collection:
        if self._collection is None:
            with self._native("get_collection"):
                self._collection = self.get_client().get_collection(self._collection_name)
        return self._collection

    def _collection_names(self) -> list[str]:
        # list_collections() returns names on chromadb >= 0.6, Collection objects before
        return [c if isinstance(c, str) else c.name for c in self.get_client().list_collections()]

    def describe_index(self) -> IndexSpec | None:
        with self._native("describe_index"):
            if self._collection_name not in self._collection_names():
                return None
            collection = self.get_collection()
            metadata = collection.metadata or {}
            dimension = metadata.get("simstore:dimension")
            if dimension is None:
                sample = collection.peek(1)
                embeddings = sample.get("embeddings")
                if embeddings is not None and len(embeddings) > 0:
                    dimension = len(embeddings[0])
            metric = metadata.get("simstore:metric") or _METRICS.get(
                metadata.get("hnsw:space", "l2"), DistanceMetric.L2
            )
            build_options = (
                f"m={metadata.get('hnsw:M', 16)}",
                f"ef_construction={metadata.get('hnsw:construction_ef', 100)}",
            )
            return IndexSpec(
                dimension=int(dimension) if dimension is not None else None,
                metric=resolve_metric(metric),
                family=IndexFamily.HNSW,
                build_options=build_options,
            )

    def _collection_metadata(self, spec: IndexSpec) -> dict[str, Any]:
        options = parse_options(spec.build_options)
        metadata: dict[str, Any] = {
            "hnsw:space": _SPACES[spec.metric],
            "simstore:metric": spec.metric.value,
        }
        if spec.dimension is not None:
            metadata["simstore:dimension"] = spec.dimension
        if "m" in options:
            metadata["hnsw:M"] = int(options["m"])
        if "ef_construction" in options:
            metadata["hnsw:construction_ef"] = int(options["ef_construction"])
        return metadata

    def create_index(self, spec: IndexSpec) -> None:
        if spec.metric not in _SPACES:
            raise ConfigurationError(f"ChromaDB does not support the {spec.metric.value} metric")
        if spec.family is not IndexFamily.HNSW:
            raise ConfigurationError(f"ChromaDB does not support {spec.family.value} indexes")
        logger.debug("Creating chroma collection %s", self._collection_name)
        with self._native("create_index"):
            self._collection = self.get_client().get_or_create_collection(
                name=self._collection_name,
                metadata=self._collection_metadata(spec),
            )

    def upsert(self, records: list[VectorRecord]) -> None:
        collection = self.get_collection()
        # Chroma rejects empty metadata dicts, so those records go without metadatas
        with_metadata = [r for r in records if r.metadata]
        without_metadata = [r for r in records if not r.metadata]
        with self._native("upsert"):
            if with_metadata:
                collection.upsert(
                    ids=[r.id for r in with_metadata],  # type: ignore[misc]
                    embeddings=[list(r.vector or []) for r in with_metadata],
                    documents=[r.text for r in with_metadata],
                    metadatas=[dict(r.metadata) for r in with_metadata],
                )
            if without_metadata:
                collection.upsert(
                    ids=[r.id for r in without_metadata],  # type: ignore[misc]
                    embeddings=[list(r.vector or []) for r in without_metadata],
                    documents=[r.text for r in without_metadata],
                )

    def _to_distance(self, raw: float) -> float:
        space = (self.get_collection().metadata or {}).get("hnsw:space", "l2")
        if space == "l2":
            # chroma reports squared euclidean distance
            return math.sqrt(max(raw, 0.0))
        if space == "ip":
            # chroma reports 1 - dot
            return 1.0 - raw
        return raw

    def query(
        self,
        vector: list[float],
        k: int,
        predicate: Any = None,
        options: list[str] | None = None,
        include_vectors: bool = False,
    ) -> list[NativeRow]:
        collection = self.get_collection()
        ef_search = parse_options(options or []).get("hnsw.ef_search")
        if ef_search is not None and not self._warned_ef_search:
            logger.warning(
                "ChromaDB fixes ef_search per collection; ignoring per-query ef_search=%s",
                ef_search,
            )
            self._warned_ef_search = True

        include = ["documents", "metadatas", "distances"]
        if include_vectors:
            include.append("embeddings")

        with self._native("query"):
            n_results = min(k, collection.count())
            if n_results == 0:
                return []
            result = collection.query(
                query_embeddings=[vector],
                n_results=n_results,
                where=predicate or None,
                include=include,  # type: ignore[arg-type]
            )

        if not result.get("ids") or not result["ids"][0]:
            return []

        ids = result["ids"][0]
        distances = result["distances"][0]  # type: ignore[index]
        documents = (result.get("documents") or [[None] * len(ids)])[0]
        metadatas = (result.get("metadatas") or [[None] * len(ids)])[0]
        embeddings = result.get("embeddings") if include_vectors else None

        rows: list[NativeRow] = []
        for idx, record_id in enumerate(ids):
            vector_out = None
            if embeddings is not None:
                vector_out = [float(x) for x in embeddings[0][idx]]
            rows.append(
                NativeRow(
                    id=record_id,
                    text=documents[idx] or "",
                    metadata=dict(metadatas[idx] or {}),
                    distance=self._to_distance(float(distances[idx])),
                    vector=vector_out,
                )
            )
        return rows

    def get(self, ids: list[str]) -> list[VectorRecord]:
        if not ids:
            return []
        with self._native("get"):
            result = self.get_collection().get(
                ids=ids, include=["documents", "metadatas", "embeddings"]  # type: ignore[list-item]
            )
        embeddings = result.get("embeddings")
        documents = result.get("documents") or [None] * len(result["ids"])
        metadatas = result.get("metadatas") or [None] * len(result["ids"])
        return [
            VectorRecord(
                id=record_id,
                vector=[float(x) for x in embeddings[idx]] if embeddings is not None else None,
                text=documents[idx] or "",
                metadata=dict(metadatas[idx] or {}),
            )
            for idx, record_id in enumerate(result["ids"])
        ]

    def existing_ids(self, ids: list[str]) -> set[str]:
        if not ids:
            return set()
        with self._native("existing_ids"):
            result = self.get_collection().get(ids=ids, include=[])
        return set(result["ids"])

    def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        with self._native("delete"):
            self.get_collection().delete(ids=ids)

    def select(self, predicate: Any = None) -> list[tuple[str, dict[str, Any]]]:
        with self._native("select"):
            result = self.get_collection().get(
                where=predicate or None, include=["metadatas"]  # type: ignore[list-item]
            )
        metadatas = result.get("metadatas") or [None] * len(result["ids"])
        return [
            (record_id, dict(metadatas[idx] or {}))
            for idx, record_id in enumerate(result["ids"])
        ]

    def delete_where(self, predicate: Any) -> None:
        with self._native("delete_where"):
            self.get_collection().delete(where=predicate)

    def clear(self) -> None:
        collection = self.get_collection()
        metadata = dict(collection.metadata or {})
        with self._native("clear"):
            client = self.get_client()
            client.delete_collection(self._collection_name)
            self._collection = client.create_collection(
                name=self._collection_name,
                metadata=metadata,
            )

    def count(self) -> int:
        with self._native("count"):
            return self.get_collection().count()

    def close(self) -> None:
        self._client = None
        self._collection = None

    @classmethod
    def from_env(cls, collection_name: str = "simstore") -> "ChromaTransport":
        """Create from environment configuration."""
        config = get_chroma_config()
        if config.is_client_mode():
            return cls(
                collection_name=collection_name,
                host=config.host or "localhost",
                port=config.port or 8000,
                mode="client",
            )
        if config.is_persistent_mode():
            return cls(collection_name=collection_name, path=config.path, mode="persistent")
        return cls(collection_name=collection_name, mode="ephemeral")
