from simstore.core import (
    ChromaConfig,
    IndexSettings,
    RedisConfig,
    SimilarityStore,
    StoreConfig,
    TransportConfig,
    VectorRecord,
)


def example_memory_store():
    config = StoreConfig(
        dimension=4,
        metric="l2",
        index=IndexSettings(family="ivfflat", lists=8, probes=2),
    )

    with SimilarityStore.from_config(config) as store:
        store.add(VectorRecord(id="a", vector=[0.1, 0.2, 0.3, 0.4], text="hello"))
        print(store.search_vector([0.1, 0.2, 0.3, 0.4], k=1))


def example_chroma_store():
    """Store backed by a ChromaDB server."""
    config = StoreConfig(
        dimension=4,
        metric="cosine",
        index=IndexSettings(m=32, ef_construction=128, ef_search=64),
        transport=TransportConfig(
            backend_type="chroma",
            collection_name="my_vectors",
            chroma=ChromaConfig(mode="client", host="localhost", port=8000),
        ),
    )

    with SimilarityStore.from_config(config) as store:
        store.add(VectorRecord(id="a", vector=[0.1, 0.2, 0.3, 0.4], metadata={"lang": "en"}))
        print(store.search_vector([0.1, 0.2, 0.3, 0.4], k=1, filter={"lang": "en"}))


def example_redis_store():
    """Store backed by Redis Stack, with natively indexed metadata fields."""
    config = StoreConfig(
        dimension=4,
        metric="inner_product",
        transport=TransportConfig(
            backend_type="redis",
            collection_name="my_vectors",
            redis=RedisConfig(url="redis://localhost:6379/0"),
            metadata_fields={"lang": "tag", "year": "numeric", "public": "bool"},
        ),
        default_timeout=2.0,
    )

    with SimilarityStore.from_config(config) as store:
        store.add(VectorRecord(id="a", vector=[0.5, 0.5, 0.5, 0.5], metadata={"lang": "en", "year": 2024}))
        print(store.search_vector([0.5, 0.5, 0.5, 0.5], k=1, filter={"year": {"$gte": 2020}}))


def example_env_based_store():
    """Read index and backend settings from environment variables.

    Environment variables:
    - SIMSTORE_INDEX_FAMILY=hnsw
    - SIMSTORE_INDEX_EF_SEARCH=80
    - CHROMADB_MODE=persistent
    - CHROMADB_PATH=./chroma_data
    """
    config = StoreConfig(
        dimension=4,
        transport=TransportConfig(backend_type="chroma"),
    )

    store = SimilarityStore.from_config(config)
    print(store.index)
    store.close()


if __name__ == "__main__":
    example_memory_store()
