"""Tests for the Redis transport against a mocked client."""

import json
from unittest.mock import MagicMock

import numpy as np
import pytest
import redis

from simstore.core.config import RedisConfig
from simstore.core.distance import DistanceMetric
from simstore.core.errors import ConfigurationError, TransportError
from simstore.core.filters import ComparisonOp, eq, gte, ne
from simstore.core.index import HNSWIndex, HNSWTuning, IndexFamily
from simstore.core.models import IndexSpec, VectorRecord
from simstore.core.storage.redis import RedisTransport, column_for
from simstore.core.store import SimilarityStore


def make_client(meta: dict | None = None) -> MagicMock:
    client = MagicMock()
    client.hgetall.return_value = meta or {}
    pipe = MagicMock()
    pipe.__enter__.return_value = pipe
    pipe.__exit__.return_value = False
    client.pipeline.return_value = pipe
    return client


def select_page(total: int, *docs: tuple[str, dict]) -> list:
    response: list = [total]
    for record_id, metadata in docs:
        response.append(f"simstore:doc:{record_id}".encode())
        response.append([b"id", record_id.encode(), b"metadata", json.dumps(metadata).encode()])
    return response


def existing_meta(metric: str = "cosine", dimension: int = 3) -> dict:
    return {
        b"dimension": str(dimension).encode(),
        b"metric": metric.encode(),
        b"family": b"hnsw",
        b"build_options": b"m=16,ef_construction=64",
    }


def search_response(*docs: tuple[str, float, dict]) -> list:
    response: list = [len(docs)]
    for record_id, distance, metadata in docs:
        response.append(f"simstore:doc:{record_id}".encode())
        response.append(
            [
                b"id", record_id.encode(),
                b"text", f"text {record_id}".encode(),
                b"metadata", json.dumps(metadata).encode(),
                b"__distance", str(distance).encode(),
            ]
        )
    return response


class TestRedisIndex:
    """Test cases for index creation and description."""

    def test_create_index_command(self) -> None:
        client = make_client()
        transport = RedisTransport(
            client=client, metadata_fields={"color": "tag", "year": "numeric", "active": "bool"}
        )
        transport.create_index(
            IndexSpec(
                dimension=3,
                metric=DistanceMetric.L2,
                family=IndexFamily.HNSW,
                build_options=("m=16", "ef_construction=64"),
            )
        )

        args = client.execute_command.call_args.args
        assert args[:8] == ("FT.CREATE", "simstore", "ON", "HASH", "PREFIX", "1", "simstore:doc:", "SCHEMA")
        schema = list(args[8:])
        assert schema[:4] == ["vector", "VECTOR", "HNSW", "10"]
        assert schema[4:14] == [
            "TYPE", "FLOAT32", "DIM", "3", "DISTANCE_METRIC", "L2", "M", "16", "EF_CONSTRUCTION", "64",
        ]
        assert schema[14:] == [
            "meta_color", "TAG", "CASESENSITIVE",
            "meta_year", "NUMERIC",
            "meta_active", "TAG", "CASESENSITIVE",
        ]
        mapping = client.hset.call_args.kwargs["mapping"]
        assert mapping["dimension"] == 3
        assert mapping["metric"] == "l2"

    def test_describe_existing_index(self) -> None:
        transport = RedisTransport(client=make_client(existing_meta("inner_product", 8)))
        described = transport.describe_index()
        assert described == IndexSpec(
            dimension=8,
            metric=DistanceMetric.INNER_PRODUCT,
            family=IndexFamily.HNSW,
            build_options=("m=16", "ef_construction=64"),
        )

    def test_store_validates_existing_index(self) -> None:
        transport = RedisTransport(client=make_client(existing_meta("cosine", 3)))
        with pytest.raises(ConfigurationError):
            SimilarityStore(transport, dimension=4, metric="cosine").initialize()

    def test_unsupported_metric(self) -> None:
        with pytest.raises(ConfigurationError):
            SimilarityStore(RedisTransport(client=make_client()), dimension=3, metric="manhattan")

    def test_redis_errors_are_wrapped(self) -> None:
        client = make_client()
        client.hgetall.side_effect = redis.ConnectionError("refused")
        transport = RedisTransport(client=client)

        with pytest.raises(TransportError) as exc_info:
            transport.describe_index()
        assert exc_info.value.backend == "redis"
        assert exc_info.value.operation == "describe_index"
        assert isinstance(exc_info.value.__cause__, redis.ConnectionError)

    def test_index_dropped_when_description_fails(self) -> None:
        client = make_client()
        client.hset.side_effect = redis.ConnectionError("reset")
        transport = RedisTransport(client=client)

        with pytest.raises(TransportError) as exc_info:
            transport.create_index(
                IndexSpec(dimension=3, metric=DistanceMetric.COSINE, family=IndexFamily.HNSW)
            )

        assert exc_info.value.operation == "create_index"
        assert client.execute_command.call_args_list[0].args[0] == "FT.CREATE"
        assert client.execute_command.call_args_list[-1].args == ("FT.DROPINDEX", "simstore")


class TestRedisWrites:
    """Test cases for record writes."""

    def test_upsert_writes_hash_in_transaction(self) -> None:
        client = make_client()
        transport = RedisTransport(
            client=client, metadata_fields={"color": "tag", "year": "numeric", "active": "bool"}
        )
        transport.upsert(
            [
                VectorRecord(
                    id="a",
                    vector=[1.0, 2.0, 3.0],
                    text="hello",
                    metadata={"color": "red", "year": "unknown", "active": False, "extra": 1},
                )
            ]
        )

        client.pipeline.assert_called_once_with(transaction=True)
        pipe = client.pipeline.return_value
        pipe.delete.assert_called_once_with("simstore:doc:a")
        mapping = pipe.hset.call_args.kwargs["mapping"]
        assert mapping["id"] == "a"
        assert mapping["text"] == "hello"
        assert np.frombuffer(mapping["vector"], dtype=np.float32).tolist() == [1.0, 2.0, 3.0]
        assert mapping["meta_color"] == "red"
        assert mapping["meta_active"] == "false"
        # value of the wrong kind is left out of the native field
        assert "meta_year" not in mapping
        pipe.execute.assert_called_once()

    def test_failed_transaction_releases_pipeline(self) -> None:
        client = make_client()
        pipe = client.pipeline.return_value
        pipe.execute.side_effect = redis.ConnectionError("reset")
        transport = RedisTransport(client=client)

        with pytest.raises(TransportError) as exc_info:
            transport.upsert([VectorRecord(id="a", vector=[1.0, 0.0, 0.0])])

        assert exc_info.value.operation == "upsert"
        pipe.__exit__.assert_called_once()
        assert pipe.__exit__.call_args.args[0] is redis.ConnectionError

    def test_read_pipeline_released(self) -> None:
        client = make_client()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [1, 0]
        transport = RedisTransport(client=client)

        assert transport.existing_ids(["a", "b"]) == {"a"}
        client.pipeline.assert_called_once_with(transaction=False)
        pipe.__exit__.assert_called_once()

    def test_untaggable_strings_are_not_indexed(self) -> None:
        client = make_client()
        transport = RedisTransport(client=client, metadata_fields={"color": "tag"})
        transport.upsert([VectorRecord(id="a", vector=[0.0], metadata={"color": "red,blue"})])
        mapping = client.pipeline.return_value.hset.call_args.kwargs["mapping"]
        assert "meta_color" not in mapping

    def test_column_names(self) -> None:
        assert column_for("color") == "meta_color"
        assert column_for("user-id") == "meta_user_id"

    def test_colliding_columns_rejected(self) -> None:
        transport = RedisTransport(client=make_client(), metadata_fields={"a-b": "tag", "a_b": "tag"})
        with pytest.raises(ConfigurationError):
            SimilarityStore(transport, dimension=3)


class TestRedisSearch:
    """Test cases for KNN queries."""

    def test_query_command_and_conversion(self) -> None:
        client = make_client(existing_meta("l2"))
        client.execute_command.return_value = search_response(("a", 4.0, {"color": "red"}))
        transport = RedisTransport(client=client, metadata_fields={"color": "tag"})

        store = SimilarityStore(
            transport, dimension=3, metric="l2", index=HNSWIndex(tuning=HNSWTuning(ef_search=10))
        )
        results = store.search_vector([1.0, 0.0, 0.0], k=3, filter=eq("color", "red"))

        args = client.execute_command.call_args.args
        assert args[2] == "(@meta_color:{red})=>[KNN $k @vector $vec EF_RUNTIME $ef AS __distance]"
        params_at = args.index("PARAMS")
        assert args[params_at + 1] == "6"
        assert args[params_at + 2 : params_at + 4] == ("k", 3)
        assert args[params_at + 6 : params_at + 8] == ("ef", "10")
        assert args[-2:] == ("DIALECT", "2")

        # squared L2 from RediSearch becomes euclidean distance
        assert results[0].id == "a"
        assert results[0].distance == pytest.approx(2.0)
        assert results[0].record.metadata == {"color": "red"}

    def test_unindexed_filters_run_in_process(self) -> None:
        client = make_client(existing_meta("cosine"))
        client.execute_command.return_value = search_response(
            ("a", 0.0, {"color": "red", "year": 2021}),
            ("b", 0.2, {"color": "red", "year": 2019}),
        )
        transport = RedisTransport(client=client, metadata_fields={"color": "tag"})
        store = SimilarityStore(transport, dimension=3, metric="cosine")

        results = store.search_vector(
            [1.0, 0.0, 0.0], k=2, filter=eq("color", "red") & gte("year", 2020)
        )

        args = client.execute_command.call_args.args
        assert args[2].startswith("(@meta_color:{red})=>[KNN $k")
        assert args[args.index("PARAMS") + 3] == 8
        assert [r.id for r in results] == ["a"]

    def test_negated_tag_without_filter_field(self) -> None:
        client = make_client(existing_meta("cosine"))
        client.execute_command.return_value = search_response()
        transport = RedisTransport(client=client, metadata_fields={"color": "tag"})
        store = SimilarityStore(transport, dimension=3, metric="cosine")

        assert store.search_vector([1.0, 0.0, 0.0], filter=ne("color", "red")) == []
        assert client.execute_command.call_args.args[2].startswith("(-@meta_color:{red})=>")

    def test_inner_product_conversion(self) -> None:
        client = make_client(existing_meta("inner_product"))
        client.execute_command.return_value = search_response(("a", 0.25, {}))
        store = SimilarityStore(RedisTransport(client=client), dimension=3, metric="ip")

        result = store.search_vector([1.0, 0.0, 0.0], k=1)[0]
        assert result.distance == pytest.approx(0.75)
        assert result.score == pytest.approx(0.75)

    def test_count_and_close(self) -> None:
        client = make_client(existing_meta())
        client.execute_command.return_value = [7]
        transport = RedisTransport(client=client)
        store = SimilarityStore(transport, dimension=3)

        assert store.count() == 7
        store.close()
        client.close.assert_called_once()


class TestRedisRemoval:
    """Test cases for listing and deleting by predicate."""

    def test_select_pages_through_results(self) -> None:
        client = make_client()
        client.execute_command.side_effect = [
            select_page(1001, ("a", {"color": "red"})),
            select_page(1001, ("b", {})),
        ]
        transport = RedisTransport(client=client, metadata_fields={"color": "tag"})

        rows = transport.select("@meta_color:{red}")

        assert rows == [("a", {"color": "red"}), ("b", {})]
        first, second = (call.args for call in client.execute_command.call_args_list)
        assert first[:3] == ("FT.SEARCH", "simstore", "(@meta_color:{red})")
        assert first[first.index("LIMIT") + 1 : first.index("LIMIT") + 3] == ("0", "1000")
        assert second[second.index("LIMIT") + 1] == "1000"

    def test_select_everything(self) -> None:
        client = make_client()
        client.execute_command.return_value = select_page(0)
        assert RedisTransport(client=client).select() == []
        assert client.execute_command.call_args.args[2] == "*"

    def test_delete_where_deletes_listed_keys(self) -> None:
        client = make_client()
        client.execute_command.return_value = select_page(2, ("a", {}), ("b", {}))
        transport = RedisTransport(client=client)

        transport.delete_where("@meta_color:{red}")

        client.delete.assert_called_once_with("simstore:doc:a", "simstore:doc:b")

    def test_remove_by_filter_through_store(self) -> None:
        client = make_client(existing_meta())
        client.execute_command.return_value = select_page(
            2, ("a", {"color": "red", "year": 2021}), ("b", {"color": "red", "year": 2019})
        )
        transport = RedisTransport(client=client, metadata_fields={"color": "tag"})
        store = SimilarityStore(transport, dimension=3)

        store.remove_by_filter(eq("color", "red") & gte("year", 2020))

        assert client.execute_command.call_args.args[2] == "(@meta_color:{red})"
        client.delete.assert_called_once_with("simstore:doc:a")


class TestRedisFromEnv:
    """Test cases for environment-driven construction."""

    def test_from_url_config(self) -> None:
        transport = RedisTransport.from_env(
            RedisConfig(url="redis://cache:6379/2"), metadata_fields={"color": "tag"}
        )
        assert transport._url == "redis://cache:6379/2"
        assert transport.filter_dialect.supports("meta_color", ComparisonOp.EQ, ("x",))

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("REDIS_URL", raising=False)
        monkeypatch.setenv("REDIS_HOST", "cache")
        monkeypatch.setenv("REDIS_PORT", "6380")

        transport = RedisTransport.from_env(index_name="vectors")

        assert transport._url is None
        assert (transport._host, transport._port) == ("cache", 6380)
        assert transport._index_name == "vectors"

    def test_unconfigured(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("REDIS_URL", raising=False)
        monkeypatch.delenv("REDIS_HOST", raising=False)
        with pytest.raises(ConfigurationError):
            RedisTransport.from_env()
