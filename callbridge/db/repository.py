"""
Tenant Repository Factory

Selects the tenant store implementation from configuration and keeps a
process-wide singleton.
"""

import logging
from typing import Optional

from callbridge.core.config import settings
from callbridge.db.base import TenantRepositoryInterface

logger = logging.getLogger(__name__)

# Singleton instance
_repository_instance: Optional[TenantRepositoryInterface] = None


def create_repository(backend: str = "memory") -> TenantRepositoryInterface:
    """
    Create a repository for the given backend.

    Args:
        backend: "memory" or "redis"
    """
    backend = backend.lower()
    if backend == "redis":
        from callbridge.db.adapters.redis_store import RedisTenantRepository
        return RedisTenantRepository()
    if backend != "memory":
        logger.warning(f"Unknown storage backend '{backend}', falling back to memory")
    from callbridge.db.adapters.memory import InMemoryTenantRepository
    return InMemoryTenantRepository()


def get_repository() -> TenantRepositoryInterface:
    """Get or create the singleton repository instance."""
    global _repository_instance

    if _repository_instance is None:
        _repository_instance = create_repository(settings.storage_backend)
        logger.info(f"Created {settings.storage_backend} repository instance")

    return _repository_instance


def set_repository(repository: Optional[TenantRepositoryInterface]) -> None:
    """Replace the singleton, e.g. with a pre-seeded store."""
    global _repository_instance
    _repository_instance = repository


async def initialize_repository() -> bool:
    """
    Connect the repository. Call this at application startup.

    Returns:
        True if initialization successful, False otherwise.
    """
    return await get_repository().connect()


async def close_repository() -> None:
    """Close the repository. Call this at application shutdown."""
    global _repository_instance
    if _repository_instance:
        await _repository_instance.disconnect()
        _repository_instance = None
        logger.info("Tenant store connection closed")
