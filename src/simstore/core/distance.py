"""Distance metrics and their conversion to normalized similarity scores.

Every backend reports a raw distance in its own metric. A ``DistanceStrategy``
maps that value to a similarity in [0, 1] so scores are comparable across
backends:

    L2:            similarity = exp(-distance)
    Manhattan:     similarity = 1 / (1 + distance)
    Cosine:        similarity = 1 - distance / 2   (cosine distance is in [0, 2])
    Inner product: similarity = raw value          (already a similarity)

All strategies except inner product are monotonically non-increasing in the
raw distance, so ranking by score and ranking by ascending distance agree.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from enum import Enum

logger = logging.getLogger(__name__)


class DistanceMetric(str, Enum):
    """Distance metric computed by the native index."""

    L2 = "l2"
    COSINE = "cosine"
    INNER_PRODUCT = "inner_product"
    MANHATTAN = "manhattan"


class DistanceStrategy(ABC):
    """Converts a raw native distance into a similarity score."""

    metric: DistanceMetric

    @abstractmethod
    def to_similarity(self, distance: float) -> float:
        ...

    @property
    def higher_is_closer(self) -> bool:
        """Whether larger raw values mean more similar vectors."""
        return False


class EuclideanStrategy(DistanceStrategy):
    metric = DistanceMetric.L2

    def to_similarity(self, distance: float) -> float:
        return math.exp(-max(distance, 0.0))


class ManhattanStrategy(DistanceStrategy):
    metric = DistanceMetric.MANHATTAN

    def to_similarity(self, distance: float) -> float:
        return 1.0 / (1.0 + max(distance, 0.0))


class CosineStrategy(DistanceStrategy):
    metric = DistanceMetric.COSINE

    def to_similarity(self, distance: float) -> float:
        return min(1.0, max(0.0, 1.0 - distance / 2.0))


class InnerProductStrategy(DistanceStrategy):
    """Pass-through: for normalized embeddings the inner product is the similarity."""

    metric = DistanceMetric.INNER_PRODUCT

    def to_similarity(self, distance: float) -> float:
        return distance

    @property
    def higher_is_closer(self) -> bool:
        return True


_STRATEGIES: dict[DistanceMetric, type[DistanceStrategy]] = {
    DistanceMetric.L2: EuclideanStrategy,
    DistanceMetric.MANHATTAN: ManhattanStrategy,
    DistanceMetric.COSINE: CosineStrategy,
    DistanceMetric.INNER_PRODUCT: InnerProductStrategy,
}

_ALIASES = {
    "euclidean": DistanceMetric.L2,
    "l1": DistanceMetric.MANHATTAN,
    "ip": DistanceMetric.INNER_PRODUCT,
    "dot": DistanceMetric.INNER_PRODUCT,
    "dot_product": DistanceMetric.INNER_PRODUCT,
}


def resolve_metric(value: DistanceMetric | str | None) -> DistanceMetric:
    """Resolve a metric tag, defaulting to L2 for unknown or missing tags.

    The L2 default changes ranking semantics for a caller who passed a tag we
    do not recognize, so it is logged as a warning.
    """
    if isinstance(value, DistanceMetric):
        return value
    if isinstance(value, str):
        tag = value.strip().lower()
        for metric in DistanceMetric:
            if tag in (metric.value, metric.name.lower()):
                return metric
        if tag in _ALIASES:
            return _ALIASES[tag]
    logger.warning("Unrecognized distance metric %r, defaulting to L2", value)
    return DistanceMetric.L2


def strategy_for(metric: DistanceMetric | str | None) -> DistanceStrategy:
    """Return the strategy for a metric (L2 for unknown or missing tags)."""
    return _STRATEGIES[resolve_metric(metric)]()
