"""Shared test fixtures."""

import uuid
from pathlib import Path

import pytest

import sys

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from simstore.core.storage.memory import MemoryTransport  # noqa: E402
from simstore.core.store import SimilarityStore  # noqa: E402


@pytest.fixture
def collection_name() -> str:
    """Unique ChromaDB collection name per test."""
    return f"test_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def memory_store() -> SimilarityStore:
    """Cosine store of dimension 3 over the memory transport."""
    store = SimilarityStore(MemoryTransport(), dimension=3, metric="cosine")
    yield store
    store.close()

