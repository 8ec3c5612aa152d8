"""Transports: the native backends behind a similarity store.

- Transport: Abstract interface for native vector backends
- MemoryTransport: Exact in-memory search for development/testing
- ChromaTransport: ChromaDB collection with an HNSW index
- RedisTransport: Redis Stack (RediSearch) HNSW index
"""

from simstore.core.storage.transport import Transport
from simstore.core.storage.memory import MemoryTransport
from simstore.core.storage.chroma import ChromaTransport
from simstore.core.storage.redis import RedisTransport
from simstore.core.storage.config import create_transport

__all__ = [
    "Transport",
    "MemoryTransport",
    "ChromaTransport",
    "RedisTransport",
    "create_transport",
]
