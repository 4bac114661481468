"""
Storage Abstraction Layer

Usage:
    from callbridge.db import get_repository

    repo = get_repository()
    tenant = await repo.get_tenant(tenant_id)
    await repo.update_call(tenant_id, call_sid, {"call_data.status": CallStatus.HANG_UP})
"""

from callbridge.db.base import TenantRepositoryInterface, apply_call_updates
from callbridge.db.repository import (
    create_repository,
    get_repository,
    set_repository,
    initialize_repository,
    close_repository,
)

__all__ = [
    "TenantRepositoryInterface",
    "apply_call_updates",
    "create_repository",
    "get_repository",
    "set_repository",
    "initialize_repository",
    "close_repository",
]
