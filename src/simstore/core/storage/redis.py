"""Redis Stack transport implementation.

RediSearch HNSW index over HASH keys.
"""

from __future__ import annotations

import json
import logging
import math
import re
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import numpy as np
import redis

from simstore.core.config import RedisConfig, get_redis_config
from simstore.core.distance import DistanceMetric, resolve_metric
from simstore.core.errors import ConfigurationError, TransportError
from simstore.core.filters import is_number
from simstore.core.index import IndexFamily, parse_options
from simstore.core.models import IndexSpec, NativeRow, VectorRecord
from simstore.core.storage.transport import Transport
from simstore.core.translator import (
    ColumnKeyMapper,
    FieldKind,
    FilterDialect,
    KeyMapper,
    RediSearchDialect,
    format_tag_value,
    is_taggable,
)

logger = logging.getLogger(__name__)

_METRICS = {
    DistanceMetric.L2: "L2",
    DistanceMetric.COSINE: "COSINE",
    DistanceMetric.INNER_PRODUCT: "IP",
}

_DISTANCE_FIELD = "__distance"
_SELECT_PAGE = 1000
_BASE_FIELDS = ("id", "text", "metadata")


def column_for(key: str) -> str:
    """Native field name for a declared metadata key."""
    return "meta_" + re.sub(r"\W", "_", key)


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisTransport(Transport):
    """RediSearch vector index over Redis hashes.

    Uses Redis data structures:
    - Hash: one record per key (key: {index_name}:doc:{id}) holding id, text,
      metadata JSON, FLOAT32 vector bytes and one field per declared metadata key
    - Hash: index description (key: {index_name}:meta)

    Batches run in a MULTI/EXEC pipeline, so they apply all or nothing.

    Args:
        index_name: RediSearch index name, also the key prefix
        metadata_fields: Metadata keys indexed natively, with their kind
            ("tag", "bool" or "numeric"). Filters on other keys run in-process.
    """

    name = "redis"
    supported_metrics = frozenset(_METRICS)
    supported_families = frozenset({IndexFamily.HNSW})
    transactional_batches = True

    def __init__(
        self,
        index_name: str = "simstore",
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
        url: str | None = None,
        metadata_fields: Mapping[str, FieldKind] | None = None,
        client: redis.Redis | None = None,
    ) -> None:
        self._index_name = index_name
        self._host = host
        self._port = port
        self._db = db
        self._password = password
        self._url = url
        self._client: redis.Redis | None = client
        self._metric: DistanceMetric | None = None
        self._fields = dict(metadata_fields or {})
        self._key_mapper = ColumnKeyMapper({key: column_for(key) for key in self._fields})
        self._dialect = RediSearchDialect(
            {column_for(key): kind for key, kind in self._fields.items()}
        )

    @classmethod
    def from_env(
        cls,
        config: RedisConfig | None = None,
        index_name: str = "simstore",
        metadata_fields: Mapping[str, FieldKind] | None = None,
    ) -> "RedisTransport":
        """Create transport from environment configuration."""
        if config is None:
            config = get_redis_config()
        if config is None:
            raise ConfigurationError(
                "Redis not configured. Set REDIS_URL or REDIS_HOST environment variable."
            )
        if config.is_url_based():
            return cls(index_name=index_name, url=config.url, metadata_fields=metadata_fields)
        return cls(
            index_name=index_name,
            host=config.host or "localhost",
            port=config.port,
            db=config.db,
            password=config.password,
            metadata_fields=metadata_fields,
        )

    @property
    def filter_dialect(self) -> FilterDialect:
        return self._dialect

    @property
    def default_key_mapper(self) -> KeyMapper:
        return self._key_mapper

    def _get_client(self) -> redis.Redis:
        # vectors are raw bytes, so responses stay undecoded
        if self._client is None:
            if self._url:
                self._client = redis.from_url(self._url, decode_responses=False)
            else:
                self._client = redis.Redis(
                    host=self._host,
                    port=self._port,
                    db=self._db,
                    password=self._password,
                    decode_responses=False,
                )
        return self._client

    @contextmanager
    def _native(self, operation: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            raise TransportError(str(exc), backend=self.name, operation=operation) from exc

    def _doc_prefix(self) -> str:
        return f"{self._index_name}:doc:"

    def _doc_key(self, record_id: str) -> str:
        return f"{self._doc_prefix()}{record_id}"

    def _meta_key(self) -> str:
        return f"{self._index_name}:meta"

    # -- index ------------------------------------------------------------------

    def describe_index(self) -> IndexSpec | None:
        with self._native("describe_index"):
            meta = self._get_client().hgetall(self._meta_key())
        if not meta:
            return None
        info = {_decode(k): _decode(v) for k, v in meta.items()}
        options = info.get("build_options", "")
        self._metric = resolve_metric(info.get("metric"))
        return IndexSpec(
            dimension=int(info["dimension"]),
            metric=self._metric,
            family=IndexFamily(info.get("family", IndexFamily.HNSW.value)),
            build_options=tuple(token for token in options.split(",") if token),
        )

    def create_index(self, spec: IndexSpec) -> None:
        if spec.metric not in _METRICS:
            raise ConfigurationError(f"RediSearch does not support the {spec.metric.value} metric")
        if spec.family is not IndexFamily.HNSW:
            raise ConfigurationError(f"RediSearch does not support {spec.family.value} indexes")
        if spec.dimension is None:
            raise ConfigurationError("RediSearch indexes need a dimension")

        options = parse_options(spec.build_options)
        attributes = [
            "TYPE", "FLOAT32",
            "DIM", str(spec.dimension),
            "DISTANCE_METRIC", _METRICS[spec.metric],
        ]
        if "m" in options:
            attributes += ["M", options["m"]]
        if "ef_construction" in options:
            attributes += ["EF_CONSTRUCTION", options["ef_construction"]]

        schema: list[str] = ["vector", "VECTOR", "HNSW", str(len(attributes)), *attributes]
        for key, kind in self._fields.items():
            if kind == "numeric":
                schema += [column_for(key), "NUMERIC"]
            else:
                schema += [column_for(key), "TAG", "CASESENSITIVE"]

        logger.debug("Creating RediSearch index %s", self._index_name)
        with self._native("create_index"):
            client = self._get_client()
            client.execute_command(
                "FT.CREATE", self._index_name,
                "ON", "HASH",
                "PREFIX", "1", self._doc_prefix(),
                "SCHEMA", *schema,
            )
            try:
                client.hset(
                    self._meta_key(),
                    mapping={
                        "dimension": spec.dimension,
                        "metric": spec.metric.value,
                        "family": spec.family.value,
                        "build_options": ",".join(spec.build_options),
                    },
                )
            except redis.RedisError:
                # the index only exists together with its description
                client.execute_command("FT.DROPINDEX", self._index_name)
                raise
        self._metric = spec.metric

    # -- writes -----------------------------------------------------------------

    def _field_value(self, kind: FieldKind, value: Any) -> Any:
        """Native value for a declared field, or None when the kind does not fit."""
        if kind == "numeric":
            if is_number(value) and math.isfinite(value):
                return value
            return None
        if kind == "bool":
            return format_tag_value(value) if isinstance(value, bool) else None
        if isinstance(value, str) and is_taggable(value):
            return value
        return None

    def _to_hash(self, record: VectorRecord) -> dict[str, Any]:
        mapping: dict[str, Any] = {
            "id": record.id,
            "text": record.text,
            "metadata": json.dumps(record.metadata),
            "vector": np.asarray(record.vector, dtype=np.float32).tobytes(),
        }
        for key, kind in self._fields.items():
            if key in record.metadata:
                value = self._field_value(kind, record.metadata[key])
                if value is not None:
                    mapping[column_for(key)] = value
        return mapping

    def upsert(self, records: list[VectorRecord]) -> None:
        with self._native("upsert"):
            with self._get_client().pipeline(transaction=True) as pipe:
                for record in records:
                    key = self._doc_key(record.id)  # type: ignore[arg-type]
                    # full replacement drops fields of the previous version
                    pipe.delete(key)
                    pipe.hset(key, mapping=self._to_hash(record))
                pipe.execute()

    def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        with self._native("delete"):
            self._get_client().delete(*[self._doc_key(i) for i in ids])

    def select(self, predicate: Any = None) -> list[tuple[str, dict[str, Any]]]:
        query = f"({predicate})" if predicate else "*"
        rows: list[tuple[str, dict[str, Any]]] = []
        offset = 0
        with self._native("select"):
            while True:
                response = self._get_client().execute_command(
                    "FT.SEARCH", self._index_name, query,
                    "RETURN", "2", "id", "metadata",
                    "LIMIT", str(offset), str(_SELECT_PAGE),
                    "DIALECT", "2",
                )
                page = response[1:]
                for i in range(0, len(page), 2):
                    fields = page[i + 1]
                    doc = {_decode(fields[j]): fields[j + 1] for j in range(0, len(fields), 2)}
                    rows.append(
                        (_decode(doc.get("id", b"")), json.loads(_decode(doc.get("metadata", b"{}"))))
                    )
                offset += _SELECT_PAGE
                if offset >= int(response[0]):
                    return rows

    def delete_where(self, predicate: Any) -> None:
        # RediSearch has no delete-by-query
        self.delete([record_id for record_id, _ in self.select(predicate)])

    def clear(self) -> None:
        with self._native("clear"):
            client = self._get_client()
            for key in client.scan_iter(match=f"{self._doc_prefix()}*"):
                client.delete(key)

    # -- reads ------------------------------------------------------------------

    def _to_distance(self, raw: float, metric: DistanceMetric) -> float:
        if metric is DistanceMetric.L2:
            # RediSearch reports squared euclidean distance
            return math.sqrt(max(raw, 0.0))
        if metric is DistanceMetric.INNER_PRODUCT:
            # RediSearch reports 1 - dot
            return 1.0 - raw
        return raw

    def _search_args(
        self,
        vector: list[float],
        k: int,
        predicate: str | None,
        options: list[str] | None,
        include_vectors: bool,
    ) -> list[Any]:
        ef_search = parse_options(options or []).get("hnsw.ef_search")
        base = f"({predicate})" if predicate else "*"
        params: list[Any] = ["k", k, "vec", np.asarray(vector, dtype=np.float32).tobytes()]
        knn = f"KNN $k @vector $vec AS {_DISTANCE_FIELD}"
        if ef_search is not None:
            knn = f"KNN $k @vector $vec EF_RUNTIME $ef AS {_DISTANCE_FIELD}"
            params += ["ef", ef_search]

        returned = [*_BASE_FIELDS, _DISTANCE_FIELD]
        if include_vectors:
            returned.append("vector")

        return [
            "FT.SEARCH", self._index_name, f"{base}=>[{knn}]",
            "PARAMS", str(len(params)), *params,
            "SORTBY", _DISTANCE_FIELD, "ASC",
            "RETURN", str(len(returned)), *returned,
            "LIMIT", "0", str(k),
            "DIALECT", "2",
        ]

    def query(
        self,
        vector: list[float],
        k: int,
        predicate: Any = None,
        options: list[str] | None = None,
        include_vectors: bool = False,
    ) -> list[NativeRow]:
        if self._metric is None and self.describe_index() is None:
            raise TransportError("index does not exist", backend=self.name, operation="query")
        metric = self._metric or DistanceMetric.L2
        args = self._search_args(vector, k, predicate, options, include_vectors)
        with self._native("query"):
            response = self._get_client().execute_command(*args)

        rows: list[NativeRow] = []
        # [total, key, [field, value, ...], key, [...], ...]
        for i in range(1, len(response), 2):
            fields = response[i + 1]
            doc = {_decode(fields[j]): fields[j + 1] for j in range(0, len(fields), 2)}
            raw_vector = doc.get("vector")
            rows.append(
                NativeRow(
                    id=_decode(doc.get("id", b"")),
                    text=_decode(doc.get("text", b"")),
                    metadata=json.loads(_decode(doc.get("metadata", b"{}"))),
                    distance=self._to_distance(float(_decode(doc[_DISTANCE_FIELD])), metric),
                    vector=(
                        np.frombuffer(raw_vector, dtype=np.float32).astype(float).tolist()
                        if include_vectors and raw_vector is not None
                        else None
                    ),
                )
            )
        return rows

    def get(self, ids: list[str]) -> list[VectorRecord]:
        if not ids:
            return []
        with self._native("get"):
            with self._get_client().pipeline(transaction=False) as pipe:
                for record_id in ids:
                    pipe.hgetall(self._doc_key(record_id))
                results = pipe.execute()

        records: list[VectorRecord] = []
        for data in results:
            if not data:
                continue
            doc = {_decode(k): v for k, v in data.items()}
            records.append(
                VectorRecord(
                    id=_decode(doc["id"]),
                    vector=np.frombuffer(doc["vector"], dtype=np.float32).astype(float).tolist(),
                    text=_decode(doc.get("text", b"")),
                    metadata=json.loads(_decode(doc.get("metadata", b"{}"))),
                )
            )
        return records

    def existing_ids(self, ids: list[str]) -> set[str]:
        if not ids:
            return set()
        with self._native("existing_ids"):
            with self._get_client().pipeline(transaction=False) as pipe:
                for record_id in ids:
                    pipe.exists(self._doc_key(record_id))
                results = pipe.execute()
        return {record_id for record_id, found in zip(ids, results) if found}

    def count(self) -> int:
        with self._native("count"):
            response = self._get_client().execute_command(
                "FT.SEARCH", self._index_name, "*", "LIMIT", "0", "0"
            )
        return int(response[0])

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
