"""Configuration for the similarity store with pydantic-based settings."""

from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from simstore.core.distance import DistanceMetric, resolve_metric
from simstore.core.index import (
    HNSWIndex,
    HNSWTuning,
    IndexConfig,
    IndexFamily,
    IVFFlatIndex,
    IVFFlatTuning,
    IVFIndex,
    IVFTuning,
)


class IndexSettings(BaseSettings):
    """ANN index family, build parameters and query tuning.

    Attributes:
        family: Index family ('hnsw', 'ivfflat' or 'ivf')
        m: HNSW graph degree
        ef_construction: HNSW build-time candidate list size
        ef_search: HNSW query-time candidate list size (raised to k when smaller)
        lists: IVF/IVFFlat list count (None derives it from the row count)
        probes: IVF/IVFFlat lists probed per query (clamped to lists)
        quantizer: IVF quantizer ('flat' or 'sq8')
    """

    model_config = SettingsConfigDict(
        env_prefix="SIMSTORE_INDEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    family: IndexFamily = Field(default=IndexFamily.HNSW, description="Index family")
    m: int = Field(default=16, gt=0, description="HNSW graph degree")
    ef_construction: int = Field(
        default=64, gt=0, description="HNSW build-time candidate list size"
    )
    ef_search: int = Field(default=40, gt=0, description="HNSW query-time candidate list size")
    lists: Optional[int] = Field(default=None, gt=0, description="IVF list count")
    probes: int = Field(default=1, gt=0, description="IVF lists probed per query")
    quantizer: Literal["flat", "sq8"] = Field(default="sq8", description="IVF quantizer")

    def to_index_config(self) -> IndexConfig:
        """Build the index configuration for the selected family."""
        if self.family is IndexFamily.IVFFLAT:
            return IVFFlatIndex(lists=self.lists, tuning=IVFFlatTuning(probes=self.probes))
        if self.family is IndexFamily.IVF:
            return IVFIndex(
                lists=self.lists,
                quantizer=self.quantizer,
                tuning=IVFTuning(probes=self.probes),
            )
        return HNSWIndex(
            m=self.m,
            ef_construction=self.ef_construction,
            tuning=HNSWTuning(ef_search=self.ef_search),
        )


class ChromaConfig(BaseSettings):
    """Configuration for ChromaDB connectivity."""

    model_config = SettingsConfigDict(
        env_prefix="CHROMADB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mode: str = Field(
        default="ephemeral",
        description="ChromaDB mode: 'client', 'persistent', or 'ephemeral'",
    )
    host: Optional[str] = Field(
        default=None, description="ChromaDB server host (for client mode)"
    )
    port: Optional[int] = Field(
        default=None, description="ChromaDB server port (for client mode)"
    )
    path: Optional[str] = Field(
        default=None, description="Persistent storage path (for persistent mode)"
    )

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate ChromaDB mode."""
        valid_modes = {"client", "persistent", "ephemeral"}
        if v not in valid_modes:
            raise ValueError(f"mode must be one of {valid_modes}, got {v}")
        return v

    @model_validator(mode="after")
    def validate_mode_requirements(self) -> "ChromaConfig":
        """Fill in client defaults and require a path for persistent mode."""
        if self.mode == "client":
            if not self.host:
                self.host = "localhost"
            if not self.port:
                self.port = 8000
        if self.mode == "persistent" and not self.path:
            raise ValueError("path is required when mode='persistent'")
        return self

    def is_client_mode(self) -> bool:
        """Check if ChromaDB is configured in client mode."""
        return self.mode == "client"

    def is_persistent_mode(self) -> bool:
        """Check if ChromaDB is configured in persistent mode."""
        return self.mode == "persistent"

    def is_ephemeral_mode(self) -> bool:
        """Check if ChromaDB is configured in ephemeral mode."""
        return self.mode == "ephemeral"


class RedisConfig(BaseSettings):
    """Configuration for Redis Stack connectivity."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: Optional[str] = Field(default=None, description="Redis connection URL")
    host: Optional[str] = Field(default=None, description="Redis server host")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, ge=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")

    def is_configured(self) -> bool:
        """Check if Redis is configured."""
        return self.url is not None or self.host is not None

    def is_url_based(self) -> bool:
        """Check if Redis is configured using URL."""
        return self.url is not None

    def is_host_based(self) -> bool:
        """Check if Redis is configured using host."""
        return self.host is not None


class TransportConfig(BaseModel):
    """Configuration for transport selection and settings.

    Attributes:
        backend_type: Native backend ('memory', 'chroma' or 'redis')
        collection_name: Collection (Chroma) or index name (Redis)
        chroma: ChromaDB configuration (used if backend_type='chroma')
        redis: Redis configuration (required if backend_type='redis')
        metadata_fields: Metadata keys indexed as native Redis fields, with
            their kind ('tag', 'bool' or 'numeric')
    """

    backend_type: Literal["memory", "chroma", "redis"] = Field(
        default="memory", description="Transport type: 'memory', 'chroma' or 'redis'"
    )
    collection_name: str = Field(
        default="simstore",
        min_length=1,
        description="Collection or index name",
    )
    chroma: Optional[ChromaConfig] = Field(
        default=None, description="ChromaDB configuration (used if backend_type='chroma')"
    )
    redis: Optional[RedisConfig] = Field(
        default=None, description="Redis configuration (required if backend_type='redis')"
    )
    metadata_fields: dict[str, Literal["tag", "bool", "numeric"]] = Field(
        default_factory=dict, description="Metadata keys indexed as native Redis fields"
    )

    @model_validator(mode="after")
    def validate_backend_config(self) -> "TransportConfig":
        """Load backend settings from the environment when not given."""
        if self.backend_type == "chroma" and self.chroma is None:
            self.chroma = ChromaConfig()
        if self.backend_type == "redis" and self.redis is None:
            self.redis = RedisConfig()
            if not self.redis.is_configured():
                raise ValueError(
                    "Redis configuration required when backend_type='redis'. "
                    "Set REDIS_URL or REDIS_HOST environment variable."
                )
        return self


class StoreConfig(BaseModel):
    """Configuration for a similarity store.

    Attributes:
        dimension: Length of every stored vector
        metric: Native distance metric (unknown names fall back to L2)
        index: ANN index settings
        fallback_multiplier: Over-fetch factor when part of a filter runs in-process
        max_fallback_fetch: Upper bound on the over-fetched candidate count
        id_retry_attempts: Attempts at generating a non-colliding record id
        default_timeout: Deadline in seconds applied when a call passes none
        max_workers: Threads used to run calls that carry a deadline
        include_vectors: Return stored vectors on search results
        expected_row_count: Row estimate used to size IVF lists when not set
        transport: Transport settings
    """

    dimension: int = Field(gt=0, description="Length of every stored vector")
    metric: DistanceMetric = Field(
        default=DistanceMetric.COSINE, description="Native distance metric"
    )
    index: IndexSettings = Field(default_factory=IndexSettings, description="ANN index settings")
    fallback_multiplier: int = Field(
        default=4, ge=1, description="Over-fetch factor for in-process filtering"
    )
    max_fallback_fetch: int = Field(
        default=1000, gt=0, description="Maximum candidates fetched for in-process filtering"
    )
    id_retry_attempts: int = Field(
        default=3, ge=1, description="Attempts at generating a non-colliding record id"
    )
    default_timeout: Optional[float] = Field(
        default=None, gt=0, description="Default per-call deadline in seconds"
    )
    max_workers: int = Field(default=4, gt=0, description="Threads for deadline-bound calls")
    include_vectors: bool = Field(
        default=False, description="Return stored vectors on search results"
    )
    expected_row_count: Optional[int] = Field(
        default=None, gt=0, description="Row estimate used to size IVF lists"
    )
    transport: TransportConfig = Field(
        default_factory=TransportConfig, description="Transport settings"
    )

    @field_validator("metric", mode="before")
    @classmethod
    def validate_metric(cls, v: object) -> DistanceMetric:
        """Resolve metric names and aliases."""
        return resolve_metric(v)  # type: ignore[arg-type]


def get_chroma_config() -> ChromaConfig:
    """Get ChromaDB configuration from environment variables."""
    return ChromaConfig()


def get_redis_config() -> Optional[RedisConfig]:
    """Get Redis configuration from environment variables, or None if not configured."""
    config = RedisConfig()
    if not config.is_configured():
        return None
    return config


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "yes", "1", "on")
