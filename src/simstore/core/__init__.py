"""Core components for similarity search."""

from simstore.core.config import (
    ChromaConfig,
    IndexSettings,
    RedisConfig,
    StoreConfig,
    TransportConfig,
)
from simstore.core.distance import DistanceMetric, DistanceStrategy, strategy_for
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
from simstore.core.index import (
    HNSWIndex,
    HNSWTuning,
    IndexFamily,
    IVFFlatIndex,
    IVFFlatTuning,
    IVFIndex,
    IVFTuning,
)
from simstore.core.models import Query, ScoredResult, VectorRecord
from simstore.core.store import SimilarityStore, StoreState, create

__all__ = [
    "ChromaConfig",
    "IndexSettings",
    "RedisConfig",
    "StoreConfig",
    "TransportConfig",
    "DistanceMetric",
    "DistanceStrategy",
    "strategy_for",
    "BatchAddError",
    "BatchOutcome",
    "ClosedStoreError",
    "ConfigurationError",
    "DimensionMismatchError",
    "InvalidFilterError",
    "InvalidRecordError",
    "SimStoreError",
    "StoreTimeoutError",
    "TransportError",
    "HNSWIndex",
    "HNSWTuning",
    "IndexFamily",
    "IVFFlatIndex",
    "IVFFlatTuning",
    "IVFIndex",
    "IVFTuning",
    "Query",
    "ScoredResult",
    "VectorRecord",
    "SimilarityStore",
    "StoreState",
    "create",
]
