"""ANN index families with their build-time and query-time parameters.

An index configuration produces two ordered lists of ``key=value`` tokens:

- ``build_options()``: parameters used once, when the index is created
- ``query_options(k)``: session parameters applied before each search

Transports consume the tokens verbatim (see ``parse_options``).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Union, cast

from simstore.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class IndexFamily(str, Enum):
    HNSW = "hnsw"
    IVFFLAT = "ivfflat"
    IVF = "ivf"


def _require_positive(name: str, value: int | None) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


def default_lists(expected_row_count: int | None) -> int:
    """Default partition count: max(1, sqrt(rows))."""
    return max(1, int(math.sqrt(max(expected_row_count or 0, 0))))


@dataclass(frozen=True)
class HNSWTuning:
    """Query-time HNSW parameters."""

    ef_search: int = 40
    family: IndexFamily = field(default=IndexFamily.HNSW, init=False)

    def __post_init__(self) -> None:
        _require_positive("ef_search", self.ef_search)

    def effective_ef_search(self, k: int) -> int:
        """ef_search below k would under-fill results; raise it to k."""
        if self.ef_search < k:
            logger.debug("Raising ef_search from %d to k=%d", self.ef_search, k)
            return k
        return self.ef_search


@dataclass(frozen=True)
class IVFFlatTuning:
    """Query-time IVFFlat parameters."""

    probes: int = 1
    family: IndexFamily = field(default=IndexFamily.IVFFLAT, init=False)

    def __post_init__(self) -> None:
        _require_positive("probes", self.probes)

    def effective_probes(self, lists: int) -> int:
        return min(self.probes, lists)


@dataclass(frozen=True)
class IVFTuning:
    """Query-time IVF (ScaNN-style, quantized) parameters."""

    probes: int = 1
    family: IndexFamily = field(default=IndexFamily.IVF, init=False)

    def __post_init__(self) -> None:
        _require_positive("probes", self.probes)

    def effective_probes(self, lists: int) -> int:
        return min(self.probes, lists)


QueryTuning = Union[HNSWTuning, IVFFlatTuning, IVFTuning]


def _check_tuning(family: IndexFamily, tuning: QueryTuning) -> None:
    if tuning.family is not family:
        raise ConfigurationError(
            f"Query tuning for {tuning.family.value} cannot be used with a "
            f"{family.value} index"
        )


@dataclass(frozen=True)
class HNSWIndex:
    """Hierarchical navigable small-world graph index.

    Attributes:
        m: Maximum graph degree per layer
        ef_construction: Candidate list size while building
        tuning: Query-time parameters (defaults to HNSWTuning())
    """

    m: int = 16
    ef_construction: int = 64
    tuning: QueryTuning = field(default_factory=HNSWTuning)
    family: IndexFamily = field(default=IndexFamily.HNSW, init=False)

    def __post_init__(self) -> None:
        _require_positive("m", self.m)
        _require_positive("ef_construction", self.ef_construction)
        _check_tuning(self.family, self.tuning)

    def build_options(self, expected_row_count: int | None = None) -> list[str]:
        return [f"m={self.m}", f"ef_construction={self.ef_construction}"]

    def query_options(self, k: int, expected_row_count: int | None = None) -> list[str]:
        tuning = cast(HNSWTuning, self.tuning)
        return [f"hnsw.ef_search={tuning.effective_ef_search(k)}"]


@dataclass(frozen=True)
class IVFFlatIndex:
    """Inverted-file index with uncompressed vectors.

    ``lists`` defaults to max(1, sqrt(expected_row_count)) when not set.
    """

    lists: int | None = None
    tuning: QueryTuning = field(default_factory=IVFFlatTuning)
    family: IndexFamily = field(default=IndexFamily.IVFFLAT, init=False)

    def __post_init__(self) -> None:
        _require_positive("lists", self.lists)
        _check_tuning(self.family, self.tuning)

    def effective_lists(self, expected_row_count: int | None = None) -> int:
        return self.lists if self.lists is not None else default_lists(expected_row_count)

    def build_options(self, expected_row_count: int | None = None) -> list[str]:
        return [f"lists={self.effective_lists(expected_row_count)}"]

    def query_options(self, k: int, expected_row_count: int | None = None) -> list[str]:
        tuning = cast(IVFFlatTuning, self.tuning)
        lists = self.effective_lists(expected_row_count)
        return [f"ivfflat.probes={tuning.effective_probes(lists)}"]


@dataclass(frozen=True)
class IVFIndex:
    """Inverted-file index with quantized vectors (ScaNN-style)."""

    lists: int | None = None
    quantizer: str = "sq8"
    tuning: QueryTuning = field(default_factory=IVFTuning)
    family: IndexFamily = field(default=IndexFamily.IVF, init=False)

    def __post_init__(self) -> None:
        _require_positive("lists", self.lists)
        if self.quantizer not in ("flat", "sq8"):
            raise ConfigurationError(f"quantizer must be 'flat' or 'sq8', got {self.quantizer!r}")
        _check_tuning(self.family, self.tuning)

    def effective_lists(self, expected_row_count: int | None = None) -> int:
        return self.lists if self.lists is not None else default_lists(expected_row_count)

    def build_options(self, expected_row_count: int | None = None) -> list[str]:
        return [
            f"lists={self.effective_lists(expected_row_count)}",
            f"quantizer={self.quantizer}",
        ]

    def query_options(self, k: int, expected_row_count: int | None = None) -> list[str]:
        tuning = cast(IVFTuning, self.tuning)
        lists = self.effective_lists(expected_row_count)
        return [f"ivf.probes={tuning.effective_probes(lists)}"]


IndexConfig = Union[HNSWIndex, IVFFlatIndex, IVFIndex]


def parse_options(tokens: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse ``key=value`` tokens into a dict, preserving order."""
    options: dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Malformed option token: {token!r}")
        options[key.strip()] = value.strip()
    return options
