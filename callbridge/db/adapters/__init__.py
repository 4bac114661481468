"""Tenant store adapters"""

from callbridge.db.adapters.memory import InMemoryTenantRepository
from callbridge.db.adapters.redis_store import RedisTenantRepository

__all__ = ["InMemoryTenantRepository", "RedisTenantRepository"]
