"""
In-process tenant store

Keeps tenant documents in a dict guarded by one asyncio lock. Documents are
copied on the way in and out so callers never share mutable state with the
store. Suitable for a single-instance deployment and for tests.
"""

import asyncio
import logging
from typing import Optional, List, Dict

from callbridge.core.exceptions import ConflictError
from callbridge.db.base import TenantRepositoryInterface, TenantMutator
from callbridge.models.call import CallHistoryEntry, utcnow
from callbridge.models.tenant import Tenant

logger = logging.getLogger(__name__)


class InMemoryTenantRepository(TenantRepositoryInterface):
    """Tenant repository backed by process memory."""

    def __init__(self):
        self._tenants: Dict[str, Tenant] = {}
        self._call_owner: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> bool:
        logger.info("Using in-memory tenant store")
        return True

    async def disconnect(self) -> None:
        pass

    async def create_tenant(self, tenant: Tenant) -> Tenant:
        async with self._lock:
            if tenant.tenant_id in self._tenants:
                raise ConflictError(
                    "Tenant with this ID already exists",
                    details={"tenant_id": tenant.tenant_id}
                )
            self._tenants[tenant.tenant_id] = tenant.model_copy(deep=True)
            for entry in tenant.call_history:
                self._call_owner[entry.call_data.call_sid] = tenant.tenant_id
        return tenant.model_copy(deep=True)

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy(deep=True) if tenant else None

    async def list_tenants(self) -> List[Tenant]:
        return [t.model_copy(deep=True) for t in self._tenants.values()]

    async def update_tenant(self, tenant_id: str, mutator: TenantMutator) -> Optional[Tenant]:
        async with self._lock:
            current = self._tenants.get(tenant_id)
            if current is None:
                return None
            working = current.model_copy(deep=True)
            if mutator(working) is False:
                return None
            working.updated_at = utcnow()
            self._tenants[tenant_id] = working
            return working.model_copy(deep=True)

    async def delete_tenant(self, tenant_id: str) -> bool:
        async with self._lock:
            if self._tenants.pop(tenant_id, None) is None:
                return False
            for call_sid in [sid for sid, owner in self._call_owner.items() if owner == tenant_id]:
                del self._call_owner[call_sid]
            return True

    async def append_call(self, tenant_id: str, entry: CallHistoryEntry) -> bool:
        call_sid = entry.call_data.call_sid
        async with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None or tenant.find_call(call_sid) is not None:
                return False
            tenant.call_history.append(entry.model_copy(deep=True))
            self._call_owner[call_sid] = tenant_id
            return True

    async def find_tenant_id_for_call(self, call_sid: str) -> Optional[str]:
        return self._call_owner.get(call_sid)
