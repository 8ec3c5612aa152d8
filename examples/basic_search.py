"""
Example: Basic similarity search with metadata filters.

This example shows how to use the SimilarityStore directly for
storing vectors and retrieving the closest ones.
"""

from simstore import Query, VectorRecord, create
from simstore.core.filters import eq, gte


def main():
    store = create(dimension=3, metric="cosine")

    print("=== Adding records ===")

    store.add_all(
        [
            VectorRecord(
                id="ml",
                vector=[0.9, 0.1, 0.0],
                text="Machine learning is a subset of AI...",
                metadata={"topic": "ai", "year": 2021},
            ),
            VectorRecord(
                id="dl",
                vector=[0.8, 0.3, 0.1],
                text="Deep learning uses neural networks...",
                metadata={"topic": "ai", "year": 2023},
            ),
            VectorRecord(
                id="db",
                vector=[0.0, 0.2, 0.9],
                text="Databases store structured data...",
                metadata={"topic": "storage", "year": 2019},
            ),
        ]
    )
    print(f"Stored {store.count()} records")

    print("=== Searching ===")

    results = store.search(Query(vector=[1.0, 0.0, 0.0], k=3))
    for result in results:
        print(f"\n{result.id}: score {result.score:.3f} (distance {result.distance:.3f})")
        print(f"Text: {result.record.text[:50]}...")

    print("\n=== Filtered search ===")
    results = store.search_vector(
        [1.0, 0.0, 0.0],
        k=3,
        filter=eq("topic", "ai") & gte("year", 2022),
    )
    for result in results:
        print(f"{result.id}: {result.score:.3f}")

    print("\n=== Removing ===")
    store.remove("dl")
    print(f"Remaining: {store.count()}")
    store.close()


if __name__ == "__main__":
    main()
