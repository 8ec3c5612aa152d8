"""Factory function for creating transports from config."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from simstore.core.config import TransportConfig
    from simstore.core.storage.transport import Transport


def create_transport(config: "TransportConfig") -> "Transport":
    """Create transport instance from config.

    Args:
        config: Transport configuration

    Returns:
        Transport instance (MemoryTransport, ChromaTransport or RedisTransport)

    Raises:
        ConfigurationError: If redis is selected but redis config is missing
    """
    if config.backend_type == "redis":
        from simstore.core.errors import ConfigurationError
        from simstore.core.storage.redis import RedisTransport

        redis_config = config.redis
        if redis_config is None or not redis_config.is_configured():
            raise ConfigurationError("Redis config required for redis backend")

        if redis_config.is_url_based():
            return RedisTransport(
                index_name=config.collection_name,
                url=redis_config.url,
                metadata_fields=config.metadata_fields,
            )
        return RedisTransport(
            index_name=config.collection_name,
            host=redis_config.host or "localhost",
            port=redis_config.port,
            db=redis_config.db,
            password=redis_config.password,
            metadata_fields=config.metadata_fields,
        )

    if config.backend_type == "chroma":
        from simstore.core.storage.chroma import ChromaTransport

        chroma_config = config.chroma
        if chroma_config is None:
            return ChromaTransport(collection_name=config.collection_name)

        if chroma_config.is_client_mode():
            return ChromaTransport(
                collection_name=config.collection_name,
                host=chroma_config.host or "localhost",
                port=chroma_config.port or 8000,
                mode="client",
            )
        elif chroma_config.is_persistent_mode():
            return ChromaTransport(
                collection_name=config.collection_name,
                path=chroma_config.path,
                mode="persistent",
            )
        else:
            return ChromaTransport(collection_name=config.collection_name, mode="ephemeral")

    from simstore.core.storage.memory import MemoryTransport

    return MemoryTransport()
