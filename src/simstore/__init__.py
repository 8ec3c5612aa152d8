"""
simstore

A backend-agnostic vector similarity store: one contract for adding,
searching and removing embedded records over several native ANN backends.

Features:
- Normalized similarity scores in [0, 1] across L2, cosine, inner product
  and Manhattan distances
- HNSW, IVFFlat and IVF index configuration with per-query tuning
- Metadata filters pushed into the native query where the backend supports
  them, evaluated in-process otherwise
- In-memory, ChromaDB and Redis Stack transports
"""

from simstore.core import filters
from simstore.core.config import StoreConfig
from simstore.core.distance import DistanceMetric
from simstore.core.errors import SimStoreError
from simstore.core.index import HNSWIndex, IVFFlatIndex, IVFIndex
from simstore.core.models import Query, ScoredResult, VectorRecord
from simstore.core.store import SimilarityStore, create

__version__ = "0.1.0"
__all__ = [
    "filters",
    "StoreConfig",
    "DistanceMetric",
    "SimStoreError",
    "HNSWIndex",
    "IVFFlatIndex",
    "IVFIndex",
    "Query",
    "ScoredResult",
    "VectorRecord",
    "SimilarityStore",
    "create",
]
