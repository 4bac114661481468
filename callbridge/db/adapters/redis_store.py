"""
Redis tenant store

Each tenant is one JSON document. Read-modify-write goes through
WATCH/MULTI so concurrent writers to the same tenant retry instead of
clobbering each other. The call correlation index is a single hash written
in the same transaction as the history append.
"""

import logging
from typing import Optional, List

from redis.exceptions import WatchError

from callbridge.core.exceptions import ConflictError
from callbridge.db.base import TenantRepositoryInterface, TenantMutator
from callbridge.models.call import CallHistoryEntry, utcnow
from callbridge.models.tenant import Tenant
from callbridge.services.redis_service import get_redis, close_redis

logger = logging.getLogger(__name__)


class RedisTenantRepository(TenantRepositoryInterface):
    """Tenant repository backed by Redis."""

    def __init__(self, prefix: str = "callbridge"):
        self.prefix = prefix
        self.index_key = f"{prefix}:tenants"
        self.call_owner_key = f"{prefix}:call_owner"

    def _key(self, tenant_id: str) -> str:
        return f"{self.prefix}:tenant:{tenant_id}"

    async def connect(self) -> bool:
        try:
            client = await get_redis()
            await client.ping()
            logger.info("Connected to Redis tenant store")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return False

    async def disconnect(self) -> None:
        await close_redis()

    async def create_tenant(self, tenant: Tenant) -> Tenant:
        client = await get_redis()
        created = await client.set(self._key(tenant.tenant_id), tenant.model_dump_json(), nx=True)
        if not created:
            raise ConflictError(
                "Tenant with this ID already exists",
                details={"tenant_id": tenant.tenant_id}
            )
        await client.sadd(self.index_key, tenant.tenant_id)
        if tenant.call_history:
            await client.hset(
                self.call_owner_key,
                mapping={e.call_data.call_sid: tenant.tenant_id for e in tenant.call_history}
            )
        return tenant

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        client = await get_redis()
        raw = await client.get(self._key(tenant_id))
        return Tenant.model_validate_json(raw) if raw else None

    async def list_tenants(self) -> List[Tenant]:
        client = await get_redis()
        tenant_ids = sorted(await client.smembers(self.index_key))
        if not tenant_ids:
            return []
        raws = await client.mget([self._key(t) for t in tenant_ids])
        return [Tenant.model_validate_json(raw) for raw in raws if raw]

    async def update_tenant(self, tenant_id: str, mutator: TenantMutator) -> Optional[Tenant]:
        client = await get_redis()
        key = self._key(tenant_id)

        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return None
                    tenant = Tenant.model_validate_json(raw)
                    if mutator(tenant) is False:
                        return None
                    tenant.updated_at = utcnow()
                    pipe.multi()
                    pipe.set(key, tenant.model_dump_json())
                    await pipe.execute()
                    return tenant
                except WatchError:
                    logger.debug(f"Concurrent write on tenant {tenant_id}, retrying")
                    continue

    async def delete_tenant(self, tenant_id: str) -> bool:
        client = await get_redis()
        tenant = await self.get_tenant(tenant_id)
        if tenant is None:
            return False

        pipe = client.pipeline(transaction=True)
        pipe.delete(self._key(tenant_id))
        pipe.srem(self.index_key, tenant_id)
        call_sids = [e.call_data.call_sid for e in tenant.call_history]
        if call_sids:
            pipe.hdel(self.call_owner_key, *call_sids)
        await pipe.execute()
        return True

    async def append_call(self, tenant_id: str, entry: CallHistoryEntry) -> bool:
        client = await get_redis()
        key = self._key(tenant_id)
        call_sid = entry.call_data.call_sid

        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return False
                    tenant = Tenant.model_validate_json(raw)
                    if tenant.find_call(call_sid) is not None:
                        return False
                    tenant.call_history.append(entry)
                    pipe.multi()
                    pipe.set(key, tenant.model_dump_json())
                    pipe.hset(self.call_owner_key, call_sid, tenant_id)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def find_tenant_id_for_call(self, call_sid: str) -> Optional[str]:
        client = await get_redis()
        return await client.hget(self.call_owner_key, call_sid)
